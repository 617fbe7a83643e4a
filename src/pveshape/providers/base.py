"""Base provider interface."""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Optional

from pveshape.models.guest import GuestSpec


class ProviderStatus(Enum):
    """Provider resource status."""
    PRESENT = "present"
    ABSENT = "absent"
    UNKNOWN = "unknown"
    ERROR = "error"


class BaseProvider(ABC):
    """Base provider interface that all providers must implement.

    ``create`` and ``update`` return the tracked state read back from the
    platform. ``read`` returns None once the resource is gone.
    """

    @abstractmethod
    async def initialize(self, config: Any, registry: Any) -> None:
        """Initialize the provider with configuration."""
        pass

    @abstractmethod
    async def status(self, spec: GuestSpec) -> ProviderStatus:
        """Check the current status of a resource."""
        pass

    @abstractmethod
    async def create(self, spec: GuestSpec) -> GuestSpec:
        """Create the resource."""
        pass

    @abstractmethod
    async def read(self, state: GuestSpec) -> Optional[GuestSpec]:
        """Refresh tracked state from the platform."""
        pass

    @abstractmethod
    async def update(self, spec: GuestSpec, state: GuestSpec) -> GuestSpec:
        """Bring an existing resource in line with its spec."""
        pass

    @abstractmethod
    async def delete(self, state: GuestSpec) -> None:
        """Ensure the resource is absent."""
        pass

    @abstractmethod
    async def import_state(self, vmid: int) -> GuestSpec:
        """Adopt an existing resource."""
        pass

    @abstractmethod
    async def validate_spec(self, spec: GuestSpec) -> bool:
        """Validate the resource specification."""
        pass
