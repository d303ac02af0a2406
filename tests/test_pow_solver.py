from __future__ import annotations

import hashlib
from concurrent.futures import ThreadPoolExecutor

import pytest

from elara.errors import ChallengeExpired
from elara.pow.solver import PowChallenge, PowSolver, deepseek_hash, solve


def test_first_round_zero_is_standard_sha3() -> None:
    for data in (b"", b"abc", b"x" * 200):
        assert deepseek_hash(data, first_round=0) == hashlib.sha3_256(data).digest()


def test_deepseek_hash_differs_from_sha3() -> None:
    assert deepseek_hash(b"abc") != hashlib.sha3_256(b"abc").digest()
    assert len(deepseek_hash(b"abc")) == 32


def test_solve_finds_nonce() -> None:
    prefix = "salt_1700000000_"
    challenge = deepseek_hash(f"{prefix}7".encode()).hex()

    assert solve(20, challenge, prefix) == 7
    assert solve(20, challenge.upper(), prefix) == 7


def test_solve_with_zero_difficulty_is_trivial() -> None:
    assert solve(0, "00" * 32, "p_") == 0


def test_solve_exhausted_search_finds_nothing() -> None:
    assert solve(5, "00" * 32, "p_") is None


def test_challenge_expiry_uses_milliseconds() -> None:
    challenge = PowChallenge.from_payload(
        {"challenge": "c", "salt": "s", "difficulty": 10, "expire_at": 2_000_000_000_000}
    )

    assert challenge.prefix == "s_2000000000000_"
    assert not challenge.expired(now=1_999_999_999)
    assert challenge.expired(now=2_000_000_000)


@pytest.mark.asyncio
async def test_solver_rejects_expired_challenge() -> None:
    solver = PowSolver(executor_factory=ThreadPoolExecutor, clock=lambda: 10_000.0)
    challenge = PowChallenge.from_payload({"challenge": "c", "salt": "s", "expire_at": 1_000})

    with pytest.raises(ChallengeExpired):
        await solver.solve_challenge(challenge)


@pytest.mark.asyncio
async def test_solver_builds_response_header() -> None:
    solver = PowSolver(executor_factory=ThreadPoolExecutor, clock=lambda: 0.0)
    expire_at = 1_700_000_000_000
    answer = deepseek_hash(f"salt_{expire_at}_3".encode()).hex()
    challenge = PowChallenge.from_payload(
        {
            "algorithm": "DeepSeekHashV1",
            "challenge": answer,
            "salt": "salt",
            "difficulty": 10,
            "signature": "sig",
            "expire_at": expire_at,
            "target_path": "/api/v0/chat/completion",
        }
    )
    try:
        response = await solver.solve_challenge(challenge)
    finally:
        solver.shutdown()

    assert response.answer == 3
    assert response.signature == "sig"
    assert solver.solved == 1
    assert response.to_header()


@pytest.mark.asyncio
async def test_solver_discards_answer_when_challenge_expires_mid_solve() -> None:
    ticks = iter([1_400_000_000.0, 1_600_000_000.0])
    solver = PowSolver(executor_factory=ThreadPoolExecutor, clock=lambda: next(ticks))
    challenge = PowChallenge.from_payload(
        {"challenge": "00" * 32, "salt": "s", "difficulty": 0, "expire_at": 1_500_000_000_000}
    )
    try:
        with pytest.raises(ChallengeExpired):
            await solver.solve_challenge(challenge)
    finally:
        solver.shutdown()
