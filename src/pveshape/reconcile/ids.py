"""Guest id allocation."""

import asyncio
import logging
import re
from typing import Awaitable, Callable, Optional, TypeVar

from pveshape.errors import GuestExistsError, IdAllocationError
from pveshape.utils.pveapi import PveApiError, PveClient


logger = logging.getLogger(__name__)

T = TypeVar("T")

COLLISION_PATTERNS = (
    re.compile(r"unable to create (?:VM|CT) \d+ - (?:VM|CT) \d+ already exists"),
    re.compile(r"unable to create (?:VM|CT) \d+: config file already exists"),
)


def is_id_collision(error: Exception) -> bool:
    """Whether a platform error means the guest id is already taken."""
    message = str(error)
    return any(pattern.search(message) for pattern in COLLISION_PATTERNS)


class IdAllocator:
    """Picks guest ids and retries creation when an auto-assigned id races."""

    def __init__(self, client: PveClient, max_attempts: int = 5, backoff: float = 0.5):
        """Initialize allocator."""
        self.client = client
        self.max_attempts = max_attempts
        self.backoff = backoff

    async def id_to_use(self, explicit: Optional[int]) -> int:
        """Return the explicit id, or the next free one."""
        if explicit is not None:
            return explicit
        vmid = await self.client.get_next_id()
        logger.debug(f"Platform assigned next free id {vmid}")
        return vmid

    async def allocate_and_create(self, explicit: Optional[int], create: Callable[[int], Awaitable[T]]) -> T:
        """Run ``create(vmid)``, retrying with a fresh id on auto-id collisions.

        A collision on an explicit id is never retried and raises
        :class:`GuestExistsError`.
        """
        for attempt in range(1, self.max_attempts + 1):
            vmid = await self.id_to_use(explicit)
            try:
                return await create(vmid)
            except PveApiError as e:
                if not is_id_collision(e):
                    raise
                if explicit is not None:
                    raise GuestExistsError(vmid) from e
                logger.warning(
                    f"Guest id {vmid} was taken by a concurrent creator "
                    f"(attempt {attempt}/{self.max_attempts})"
                )

            if attempt < self.max_attempts:
                await asyncio.sleep(self.backoff * attempt)

        raise IdAllocationError(self.max_attempts)
