"""Read-path drift policy: remote truth always replaces local belief."""

import logging
from typing import Optional, TypeVar

from pveshape.models.guest import GuestSpec, RemoteGuestConfig, StateMask
from pveshape.reconcile.reader import StateReader
from pveshape.reconcile.translate import GuestTranslator


logger = logging.getLogger(__name__)

S = TypeVar("S", bound=GuestSpec)


class DriftReconciler:
    """Overwrites tracked state with what the platform reports.

    Every platform-tracked field is replaced, never merged. Fields the
    platform does not track at all, such as a container password, are
    kept from the record being refreshed.
    """

    def __init__(self, reader: StateReader, translator: GuestTranslator):
        """Initialize drift reconciler."""
        self.reader = reader
        self.translator = translator

    def apply(self, record: S, remote: RemoteGuestConfig) -> S:
        """Overlay the parts of ``remote`` selected by its mask onto ``record``."""
        update = {}
        if remote.mask & StateMask.CONFIG:
            update.update(self.translator.from_remote(remote))
        if remote.mask & StateMask.STATUS:
            update["status"] = remote.status
        if remote.mask & StateMask.NET and "ipv4_address" in type(record).model_fields:
            update["ipv4_address"] = remote.ipv4_address
        return record.model_copy(update=update)

    async def refresh(self, record: S) -> Optional[S]:
        """Re-read a tracked guest, or None if it no longer exists."""
        if record.vmid is None:
            return record

        ref = await self.reader.locate(record.vmid)
        if ref is None or ref.kind != self.translator.kind:
            logger.info(f"Guest {record.vmid} no longer exists, dropping it from tracked state")
            return None

        remote = await self.reader.read(ref, StateMask.EVERYTHING)
        return self.apply(record, remote)
