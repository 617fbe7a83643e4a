"""Attachment diff engine.

Computes and applies the minimal set of platform calls that turns the
devices a guest has into the devices it should have. Calls are issued in
a fixed order: one bulk delete, one bulk attach, then per-slot moves and
resizes, and finally a re-read so that volume references chosen by the
platform flow back to the caller. A failure aborts the remaining steps
without rollback; the next read surfaces whatever was left behind.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List

from pveshape.errors import GuestOperationError
from pveshape.models.guest import Attachment, GuestRef, SlotKey
from pveshape.reconcile.translate import GuestTranslator
from pveshape.utils.pveapi import PveClient
from pveshape.utils.sizes import same_size


logger = logging.getLogger(__name__)


def _sorted(keys) -> List[SlotKey]:
    return sorted(keys, key=lambda k: k.sort_key)


@dataclass
class DiffPlan:
    """Device operations, in the order they must be applied."""
    deletes: List[SlotKey] = field(default_factory=list)
    creates: Dict[SlotKey, Attachment] = field(default_factory=dict)
    moves: Dict[SlotKey, str] = field(default_factory=dict)
    resizes: Dict[SlotKey, str] = field(default_factory=dict)
    merged: Dict[SlotKey, Attachment] = field(default_factory=dict)

    @property
    def empty(self) -> bool:
        return not (self.deletes or self.creates or self.moves or self.resizes)

    def describe(self) -> str:
        parts = []
        if self.deletes:
            parts.append("delete " + ", ".join(k.name for k in self.deletes))
        if self.creates:
            parts.append("attach " + ", ".join(k.name for k in _sorted(self.creates)))
        for key, storage in self.moves.items():
            parts.append(f"move {key} to {storage}")
        for key, size in self.resizes.items():
            parts.append(f"resize {key} to {size}")
        return "; ".join(parts) or "no device changes"


class AttachmentDiff:
    """Plans and applies device changes for one guest kind."""

    def __init__(self, client: PveClient, translator: GuestTranslator):
        """Initialize diff engine."""
        self.client = client
        self.translator = translator

    def plan(self, previous: Dict[SlotKey, Attachment], desired: Dict[SlotKey, Attachment]) -> DiffPlan:
        """Compute operations turning ``previous`` into ``desired``."""
        plan = DiffPlan()

        # Delete slots that are gone or point at a different volume.
        # The root filesystem can only be moved or resized.
        for key in _sorted(previous):
            if key == SlotKey.ROOTFS:
                continue
            want = desired.get(key)
            if want is None or (want.volume and want.volume != previous[key].volume):
                plan.deletes.append(key)

        for key in _sorted(desired):
            want = desired[key]
            have = previous.get(key)
            if have is None or key in plan.deletes:
                plan.merged[key] = want if have is None else want.merged_with(have.model_copy(update={"volume": None}))
                plan.creates[key] = plan.merged[key]
                continue

            merged = want.merged_with(have)
            plan.merged[key] = merged

            if merged.media == "cdrom" or have.media == "cdrom":
                if merged.file != have.file or merged.media != have.media:
                    plan.creates[key] = merged
                continue

            if merged.storage and have.storage and merged.storage != have.storage:
                plan.moves[key] = merged.storage
            if merged.size and not same_size(merged.size, have.size):
                plan.resizes[key] = merged.size

        return plan

    def fold_into(self, plan: DiffPlan, params: Dict[str, object]) -> DiffPlan:
        """Move deletes and attaches into a pending config update.

        A slot that is both deleted and re-attached cannot be expressed in a
        single update, so those stay in the returned residual plan along
        with moves and resizes.
        """
        recreated = set(plan.deletes) & set(plan.creates)
        deletes = [k.name for k in plan.deletes if k not in recreated]
        if deletes:
            existing = [d for d in str(params.get("delete", "")).split(",") if d]
            params["delete"] = ",".join(existing + deletes)
        for key in _sorted(plan.creates):
            if key not in recreated:
                params[key.name] = self.translator.attachment_param(key, plan.creates[key])

        return DiffPlan(
            deletes=[k for k in plan.deletes if k in recreated],
            creates={k: v for k, v in plan.creates.items() if k in recreated},
            moves=dict(plan.moves),
            resizes=dict(plan.resizes),
            merged=plan.merged,
        )

    async def apply(self, ref: GuestRef, plan: DiffPlan):
        """Issue the calls of a plan against the platform."""
        if plan.deletes:
            names = ", ".join(k.name for k in plan.deletes)
            logger.info(f"Detaching {names} from guest {ref.vmid}")
            await self.client.update_config(ref, {"delete": names})

        if plan.creates:
            params = {
                key.name: self.translator.attachment_param(key, plan.creates[key])
                for key in _sorted(plan.creates)
            }
            logger.info(f"Attaching {', '.join(params)} to guest {ref.vmid}")
            await self.client.update_config(ref, params)

        for key, storage in plan.moves.items():
            logger.info(f"Moving {key} of guest {ref.vmid} to storage {storage}")
            await self.client.move_volume(ref, key.name, storage)

        for key, size in plan.resizes.items():
            logger.info(f"Resizing {key} of guest {ref.vmid} to {size}")
            await self.client.resize_volume(ref, key.name, size)

    async def refresh_volumes(self, ref: GuestRef, attachments: Dict[SlotKey, Attachment]) -> Dict[SlotKey, Attachment]:
        """Copy platform-assigned volume references into ``attachments``."""
        config = await self.client.get_config(ref)
        observed = self.translator.attachments_from_remote(config)

        refreshed = {}
        for key, attachment in attachments.items():
            if key not in observed:
                raise GuestOperationError(
                    "read back devices of", ref.vmid,
                    RuntimeError(f"{key} is missing from the configuration after update"),
                )
            refreshed[key] = attachment.model_copy(update={
                "volume": observed[key].volume,
                "storage": observed[key].storage or attachment.storage,
            })
        return refreshed
