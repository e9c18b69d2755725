"""Provider protocol and the kind-to-provider registry."""

from collections.abc import Mapping
from typing import Any, Protocol, runtime_checkable

from stackapply.errors import UnknownKindError


@runtime_checkable
class Provider(Protocol):
    """Operations a backend exposes for one resource kind.

    Every operation must be idempotent; the executor retries on
    TransientProviderError. `read` may raise NotImplementedError when the
    backend cannot report live state, and returns None for a missing resource.
    """

    def create(self, properties: dict[str, Any]) -> str: ...

    def update(self, physical_id: str, properties: dict[str, Any]) -> None: ...

    def delete(self, physical_id: str) -> None: ...

    def read(self, physical_id: str) -> dict[str, Any] | None: ...


class ProviderRegistry:
    """Maps resource kinds to providers."""

    def __init__(
        self,
        providers: Mapping[str, Provider] | None = None,
        default: Provider | None = None,
    ):
        self._providers: dict[str, Provider] = dict(providers or {})
        self._default = default

    def register(self, kind: str, provider: Provider) -> None:
        self._providers[kind] = provider

    def for_kind(self, kind: str, logical_id: str | None = None) -> Provider:
        provider = self._providers.get(kind, self._default)
        if provider is None:
            raise UnknownKindError(kind, logical_id)
        return provider

    def kinds(self) -> list[str]:
        return list(self._providers)
