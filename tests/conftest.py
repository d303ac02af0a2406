from __future__ import annotations

from collections.abc import AsyncIterator

import pytest

from elara.providers.base import Capabilities, Provider
from elara.providers.events import RawVendorEvent
from elara.providers.models import SendRequest
from elara.providers.registry import ProviderRegistry


class ScriptedProvider(Provider):
    """Replays a fixed list of raw events; an exception in the list is raised."""

    def __init__(
        self,
        name: str = "Scripted",
        script: list[RawVendorEvent | Exception] | None = None,
        *,
        default_model: str = "scripted-1",
        markers: tuple[str, ...] = (),
        capabilities: Capabilities | None = None,
    ) -> None:
        super().__init__()
        self._name = name
        self._default_model = default_model
        self.script = list(script or [])
        self.markers = markers
        self.capabilities = capabilities or Capabilities(model_matching=bool(markers))
        self.requests: list[SendRequest] = []
        self.closed = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def default_model(self) -> str:
        return self._default_model

    def is_model_supported(self, model_id: str) -> bool:
        return any(marker in model_id.lower() for marker in self.markers)

    async def _stream(self, req: SendRequest) -> AsyncIterator[RawVendorEvent]:
        self.requests.append(req)
        try:
            for item in self.script:
                if isinstance(item, Exception):
                    raise item
                yield item
        finally:
            self.closed = True


@pytest.fixture
def scripted():
    return ScriptedProvider


@pytest.fixture
def registry_of():
    def build(*providers: Provider) -> ProviderRegistry:
        registry = ProviderRegistry()
        for provider in providers:
            registry.register(provider)
        return registry

    return build
