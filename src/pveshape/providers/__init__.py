"""Guest providers for pveshape."""

from pveshape.providers.base import BaseProvider, ProviderStatus
from pveshape.providers.guest import GuestProvider
from pveshape.providers.lxc import LxcProvider
from pveshape.providers.registry import ProviderRegistry
from pveshape.providers.vm import VmProvider

__all__ = [
    "BaseProvider",
    "ProviderStatus",
    "GuestProvider",
    "VmProvider",
    "LxcProvider",
    "ProviderRegistry",
]
