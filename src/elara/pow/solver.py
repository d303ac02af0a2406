"""DeepSeek proof-of-work: DeepSeekHashV1 and the off-loop solver pool.

DeepSeekHashV1 is SHA3-256 with one change: the Keccak-f[1600] permutation
skips round 0 and runs rounds 1..23. The upstream sends ``{challenge, salt,
expire_at, difficulty}``; the answer is the nonce ``n < difficulty`` for which
``hash(f"{salt}_{expire_at}_{n}")`` equals ``challenge``.
"""

from __future__ import annotations

import asyncio
import base64
import json
import time
from collections.abc import Callable
from concurrent.futures import Executor, ProcessPoolExecutor
from dataclasses import asdict, dataclass
from typing import Any

import structlog

from elara.errors import ChallengeExpired

logger = structlog.get_logger()

_MASK = (1 << 64) - 1
_RATE = 136

_ROUND_CONSTANTS = (
    0x0000000000000001, 0x0000000000008082, 0x800000000000808A, 0x8000000080008000,
    0x000000000000808B, 0x0000000080000001, 0x8000000080008081, 0x8000000000008009,
    0x000000000000008A, 0x0000000000000088, 0x0000000080008009, 0x000000008000000A,
    0x000000008000808B, 0x800000000000008B, 0x8000000000008089, 0x8000000000008003,
    0x8000000000008002, 0x8000000000000080, 0x000000000000800A, 0x800000008000000A,
    0x8000000080008081, 0x8000000000008080, 0x0000000080000001, 0x8000000080008008,
)

# Rotation offset for lane (x, y), stored at index x + 5 * y.
_ROTATIONS = (
    0, 1, 62, 28, 27,
    36, 44, 6, 55, 20,
    3, 10, 43, 25, 39,
    41, 45, 15, 21, 8,
    18, 2, 61, 56, 14,
)

# Destination index of lane (x, y) after the pi step: (y, 2x + 3y).
_PI = tuple(y + 5 * ((2 * x + 3 * y) % 5) for y in range(5) for x in range(5))
_PI_SOURCE = tuple(x + 5 * y for y in range(5) for x in range(5))


def _rotl(value: int, shift: int) -> int:
    if shift == 0:
        return value
    return ((value << shift) | (value >> (64 - shift))) & _MASK


def _keccak_f(lanes: list[int], first_round: int = 1) -> None:
    for rc in _ROUND_CONSTANTS[first_round:]:
        # theta
        c = [lanes[x] ^ lanes[x + 5] ^ lanes[x + 10] ^ lanes[x + 15] ^ lanes[x + 20] for x in range(5)]
        for x in range(5):
            d = c[(x - 1) % 5] ^ _rotl(c[(x + 1) % 5], 1)
            for y in range(0, 25, 5):
                lanes[x + y] ^= d
        # rho + pi
        b = [0] * 25
        for src, dst in zip(_PI_SOURCE, _PI):
            b[dst] = _rotl(lanes[src], _ROTATIONS[src])
        # chi
        for y in range(0, 25, 5):
            row = b[y:y + 5]
            for x in range(5):
                lanes[x + y] = row[x] ^ ((~row[(x + 1) % 5]) & row[(x + 2) % 5])
        # iota
        lanes[0] ^= rc


def deepseek_hash(data: bytes, *, first_round: int = 1) -> bytes:
    """256-bit DeepSeekHashV1 digest (``first_round=0`` gives standard SHA3-256)."""
    padded = bytearray(data)
    padded.append(0x06)
    padded.extend(b"\x00" * ((-len(padded)) % _RATE))
    padded[-1] |= 0x80

    lanes = [0] * 25
    for offset in range(0, len(padded), _RATE):
        block = padded[offset:offset + _RATE]
        for i in range(_RATE // 8):
            lanes[i] ^= int.from_bytes(block[i * 8:i * 8 + 8], "little")
        _keccak_f(lanes, first_round)

    return b"".join(lane.to_bytes(8, "little") for lane in lanes[:4])


def solve(difficulty: int, challenge: str, prefix: str) -> int | None:
    """Search ``range(difficulty)`` for the nonce whose hash is ``challenge``.

    A non-positive difficulty needs no work and answers 0. Pure and side-effect
    free so it can run in a worker process.
    """
    if int(difficulty) <= 0:
        return 0
    target = challenge.lower()
    encoded_prefix = prefix.encode("utf-8")
    for nonce in range(int(difficulty)):
        if deepseek_hash(encoded_prefix + str(nonce).encode("ascii")).hex() == target:
            return nonce
    return None


@dataclass(frozen=True)
class PowChallenge:
    algorithm: str
    challenge: str
    salt: str
    difficulty: int
    signature: str
    expire_at: int
    target_path: str

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> PowChallenge:
        return cls(
            algorithm=str(data.get("algorithm") or "DeepSeekHashV1"),
            challenge=str(data["challenge"]),
            salt=str(data["salt"]),
            difficulty=int(data.get("difficulty") or 0),
            signature=str(data.get("signature") or ""),
            expire_at=int(data.get("expire_at") or 0),
            target_path=str(data.get("target_path") or ""),
        )

    @property
    def prefix(self) -> str:
        return f"{self.salt}_{self.expire_at}_"

    def expired(self, now: float | None = None) -> bool:
        """``expire_at`` is epoch milliseconds; 0 means no expiry."""
        if not self.expire_at:
            return False
        now = time.time() if now is None else now
        expire_s = self.expire_at / 1000 if self.expire_at > 10**11 else self.expire_at
        return now >= expire_s


@dataclass(frozen=True)
class PowResponse:
    algorithm: str
    challenge: str
    salt: str
    answer: int
    signature: str
    target_path: str

    def to_header(self) -> str:
        payload = json.dumps(asdict(self), separators=(",", ":"))
        return base64.b64encode(payload.encode("utf-8")).decode("ascii")


class PowSolver:
    """Runs ``solve`` in a dedicated worker pool, away from the event loop.

    The pool is created on first use and reused for the process lifetime.
    """

    def __init__(
        self,
        workers: int = 1,
        *,
        executor_factory: Callable[[], Executor] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.workers = max(1, int(workers))
        self._executor_factory = executor_factory or (lambda: ProcessPoolExecutor(max_workers=self.workers))
        self._executor: Executor | None = None
        self._clock = clock
        self.solved = 0

    def _pool(self) -> Executor:
        if self._executor is None:
            self._executor = self._executor_factory()
            logger.info("pow.pool_started", workers=self.workers)
        return self._executor

    async def solve_challenge(self, challenge: PowChallenge) -> PowResponse:
        if challenge.expired(self._clock()):
            logger.warning("pow.challenge_expired", expire_at=challenge.expire_at)
            raise ChallengeExpired(f"PoW challenge expired at {challenge.expire_at}")

        start = time.monotonic()
        loop = asyncio.get_running_loop()
        answer = await loop.run_in_executor(
            self._pool(),
            solve,
            challenge.difficulty,
            challenge.challenge,
            challenge.prefix,
        )
        self.solved += 1
        logger.info(
            "pow.solved",
            difficulty=challenge.difficulty,
            found=answer is not None,
            duration=f"{time.monotonic() - start:.2f}s",
        )
        if challenge.expired(self._clock()):
            logger.warning("pow.challenge_expired_during_solve", expire_at=challenge.expire_at)
            raise ChallengeExpired(f"PoW challenge expired at {challenge.expire_at} while solving")
        return PowResponse(
            algorithm=challenge.algorithm,
            challenge=challenge.challenge,
            salt=challenge.salt,
            answer=answer if answer is not None else 0,
            signature=challenge.signature,
            target_path=challenge.target_path,
        )

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
            logger.info("pow.pool_stopped")
