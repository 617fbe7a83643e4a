"""Provider registry for managing guest providers."""

import logging
from typing import Dict, Optional, Type

from pveshape.models.guest import GuestSpec
from pveshape.providers.base import BaseProvider
from pveshape.providers.lxc import LxcProvider
from pveshape.providers.vm import VmProvider
from pveshape.utils.pveapi import PveClient


logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Registry for managing providers.

    Owns the API client shared by every provider.
    """

    def __init__(self):
        """Initialize provider registry."""
        self.client: Optional[PveClient] = None
        self._owns_client = False
        self._providers: Dict[str, BaseProvider] = {}
        self._provider_classes: Dict[str, Type[BaseProvider]] = {
            "qemu": VmProvider,
            "lxc": LxcProvider,
        }

    async def initialize(self, config, client: Optional[PveClient] = None, verify: bool = True):
        """Connect to the platform and initialize all providers with two-pass injection."""
        if client is None:
            client = PveClient.from_config(config)
            self._owns_client = True
        self.client = client

        if verify:
            await self.client.verify_access()

        # Phase 1: Instantiate all providers
        for name, provider_class in self._provider_classes.items():
            try:
                self._providers[name] = provider_class()
            except Exception as e:
                logger.error(f"Failed to instantiate provider {name}: {e}")
                raise

        # Phase 2: Initialize and inject registry
        for name, provider in self._providers.items():
            try:
                await provider.initialize(config, self)
                logger.debug(f"Initialized provider: {name}")
            except Exception as e:
                logger.error(f"Failed to initialize provider {name}: {e}")
                raise

    def get_provider(self, name: str) -> Optional[BaseProvider]:
        """Get a provider by name."""
        return self._providers.get(name)

    def provider_for(self, spec: GuestSpec) -> BaseProvider:
        """Get the provider that manages a spec's kind."""
        provider = self._providers.get(spec.kind)
        if provider is None:
            raise KeyError(f"No provider for guest kind {spec.kind!r}")
        return provider

    def list_providers(self) -> list[str]:
        """List available provider names."""
        return list(self._providers.keys())

    async def close(self):
        """Release the API client if the registry created it."""
        if self.client is not None and self._owns_client:
            await self.client.aclose()
        self.client = None
