"""Abstract interface for service event handlers."""

from __future__ import annotations

from abc import ABC, abstractmethod

from netlox_lb.orchestrator import Service


class ServiceHandler(ABC):
    """Base class for handlers managed by :class:`ProviderRegistry`."""

    @abstractmethod
    def on_service_upsert(self, service: Service) -> None:
        """Converge ``service`` towards its desired state."""

    @abstractmethod
    def on_service_delete(self, service: Service) -> None:
        """Remove any state associated with ``service``."""
