"""Address discovery through the QEMU guest agent."""

import asyncio
import ipaddress
import logging
import re
from typing import Any, Dict, List, Optional

from pveshape.errors import AddressPollTimeout
from pveshape.models.guest import GuestRef
from pveshape.utils.pveapi import PveApiError, PveClient


logger = logging.getLogger(__name__)

MAC_RE = re.compile(r"([a-fA-F0-9]{2}:){5}[a-fA-F0-9]{2}")
AGENT_NOT_RUNNING = "QEMU guest agent is not running"
IPV4_BROADCAST = ipaddress.IPv4Address("255.255.255.255")


def extract_mac(net_config: Optional[str]) -> Optional[str]:
    """Lower-cased MAC address found in a network device string."""
    if not net_config:
        return None
    match = MAC_RE.search(net_config)
    return match.group(0).lower() if match else None


def is_global_unicast(address: ipaddress.IPv4Address) -> bool:
    """Any unicast address other than loopback, link-local or unspecified.

    Private ranges count as global unicast here.
    """
    return not (
        address.is_loopback
        or address.is_multicast
        or address.is_link_local
        or address.is_unspecified
        or address == IPV4_BROADCAST
    )


def match_ipv4(interfaces: List[Dict[str, Any]], mac: str) -> Optional[str]:
    """First global unicast IPv4 address of the interface with ``mac``."""
    for interface in interfaces:
        if interface.get("hardware-address", "").lower() != mac:
            continue
        for entry in interface.get("ip-addresses", []):
            try:
                address = ipaddress.ip_address(entry.get("ip-address", ""))
            except ValueError:
                continue
            if address.version == 4 and is_global_unicast(address):
                return str(address)
    return None


class GuestNetworkPoller:
    """Polls the guest agent until it reports an address for a MAC."""

    def __init__(self, client: PveClient, interval: float = 2.0, deadline: float = 300.0):
        """Initialize poller."""
        self.client = client
        self.interval = interval
        self.deadline = deadline

    async def discover_ipv4(self, ref: GuestRef, mac: str, stop: Optional[asyncio.Event] = None) -> Optional[str]:
        """Wait for the guest agent to report an IPv4 address.

        Returns the address, or None if ``stop`` is set first. Raises
        :class:`AddressPollTimeout` once the deadline passes and re-raises
        any agent error other than "not running yet". The background poll
        is always cancelled before returning.
        """
        logger.debug(f"Waiting for guest agent on {ref.vmid} to report an address for {mac}")
        poll_task = asyncio.create_task(self._poll(ref, mac.lower()))
        stop_task = asyncio.create_task(stop.wait()) if stop else None
        waiters = {poll_task} | ({stop_task} if stop_task else set())

        try:
            done, _ = await asyncio.wait(waiters, timeout=self.deadline, return_when=asyncio.FIRST_COMPLETED)
            if poll_task in done:
                return poll_task.result()
            if stop_task in done:
                logger.debug(f"Stopped waiting for an address on guest {ref.vmid}")
                return None
            raise AddressPollTimeout(ref.vmid, self.deadline)
        finally:
            pending = [t for t in (poll_task, stop_task) if t is not None and not t.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

    async def _poll(self, ref: GuestRef, mac: str) -> str:
        while True:
            try:
                interfaces = await self.client.agent_network_interfaces(ref)
            except PveApiError as e:
                if AGENT_NOT_RUNNING not in str(e):
                    raise
                logger.debug(f"Guest agent on {ref.vmid} is not running yet")
            else:
                address = match_ipv4(interfaces, mac)
                if address:
                    logger.info(f"Guest {ref.vmid} reported address {address}")
                    return address
            await asyncio.sleep(self.interval)
