"""Provider collaborators: the protocol, the registry and a simulated backend."""

from stackapply.providers.base import Provider, ProviderRegistry
from stackapply.providers.memory import InMemoryProvider, SimulatedBackend, simulated_registry

__all__ = [
    "InMemoryProvider",
    "Provider",
    "ProviderRegistry",
    "SimulatedBackend",
    "simulated_registry",
]
