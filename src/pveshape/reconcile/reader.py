"""Masked reads of remote guest state."""

import asyncio
import logging
from typing import Optional

from pveshape.models.guest import GuestRef, RemoteGuestConfig, StateMask
from pveshape.reconcile.netpoll import GuestNetworkPoller, extract_mac
from pveshape.reconcile.translate import parse_agent_flag
from pveshape.utils.pveapi import PveClient


logger = logging.getLogger(__name__)


class StateReader:
    """Fetches only the parts of remote state selected by a :class:`StateMask`.

    Address discovery may poll for minutes, so callers ask for ``NET`` only
    when they need it.
    """

    def __init__(self, client: PveClient, poller: Optional[GuestNetworkPoller] = None):
        """Initialize state reader."""
        self.client = client
        self.poller = poller or GuestNetworkPoller(client)

    async def locate(self, vmid: int) -> Optional[GuestRef]:
        """Find a guest anywhere in the cluster."""
        for guest in await self.client.list_guests():
            if int(guest.get("vmid", -1)) == vmid:
                return GuestRef(node=guest["node"], vmid=vmid, kind=guest["type"])
        return None

    async def read(self, ref: GuestRef, mask: StateMask, stop: Optional[asyncio.Event] = None) -> RemoteGuestConfig:
        """Read the subset of guest state selected by ``mask``."""
        remote = RemoteGuestConfig(node=ref.node, vmid=ref.vmid, kind=ref.kind, mask=mask)
        logger.debug(f"Reading {mask!r} of guest {ref.vmid}")

        if mask & (StateMask.CONFIG | StateMask.NET):
            remote.config = await self.client.get_config(ref)

        status = None
        if mask & (StateMask.STATUS | StateMask.NET):
            status = (await self.client.get_status(ref)).get("status")
        if mask & StateMask.STATUS:
            remote.status = status

        if mask & StateMask.NET:
            remote.ipv4_address = await self._discover_address(ref, remote.config, status, stop)

        return remote

    async def _discover_address(self, ref, config, status, stop) -> Optional[str]:
        # Only QEMU guests with the agent enabled can report addresses, and a
        # stopped guest's agent never answers.
        if ref.kind != "qemu" or not parse_agent_flag(config.get("agent")):
            return None
        if status != "running":
            return None
        mac = extract_mac(config.get("net0"))
        if not mac:
            return None
        return await self.poller.discover_ipv4(ref, mac, stop=stop)
