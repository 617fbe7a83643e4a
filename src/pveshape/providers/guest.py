"""Lifecycle orchestration shared by every guest kind."""

import logging
from contextlib import contextmanager
from typing import TYPE_CHECKING, Optional, Type

from pveshape.errors import (
    CloneSourceNotFoundError,
    GuestOperationError,
    ImportNotSupportedError,
    IncompleteCreateError,
    PveshapeError,
    TranslationError,
)
from pveshape.models.guest import GuestRef, GuestSpec, StateMask
from pveshape.providers.base import BaseProvider, ProviderStatus
from pveshape.reconcile.attachments import AttachmentDiff
from pveshape.reconcile.drift import DriftReconciler
from pveshape.reconcile.ids import IdAllocator
from pveshape.reconcile.netpoll import GuestNetworkPoller
from pveshape.reconcile.plan import carry_computed
from pveshape.reconcile.reader import StateReader
from pveshape.reconcile.translate import ConfigDraft, GuestTranslator
from pveshape.utils.pveapi import PveApiError, PveClient

if TYPE_CHECKING:
    from pveshape.providers.registry import ProviderRegistry

logger = logging.getLogger(__name__)


@contextmanager
def guest_operation(operation: str, vmid: Optional[int]):
    """Attach the failing step and guest id to platform errors."""
    try:
        yield
    except PveApiError as e:
        target = f"guest {vmid}" if vmid is not None else "guest"
        logger.error(f"Failed to {operation} {target}: {e}")
        raise GuestOperationError(operation, vmid, e) from e


class GuestProvider(BaseProvider):
    """Create, read, update and delete guests of one kind.

    Kind-specific behaviour lives in the translator; how device changes are
    pushed is chosen per kind by the ``attachment_strategy`` setting:
    ``diff`` applies them as separate calls before the config update,
    ``config`` folds deletes and attaches into the config update itself.
    """

    kind: str = ""
    spec_class: Type[GuestSpec] = GuestSpec
    translator_class: Type[GuestTranslator] = GuestTranslator
    attachment_strategy: str = "config"

    def __init__(self):
        """Initialize guest provider."""
        self.translator = self.translator_class()
        self.client: Optional[PveClient] = None
        self.ids: Optional[IdAllocator] = None
        self.reader: Optional[StateReader] = None
        self.diff: Optional[AttachmentDiff] = None
        self.drift: Optional[DriftReconciler] = None

    async def initialize(self, config, registry: "ProviderRegistry") -> None:
        """Initialize provider with configuration and registry."""
        engine = config.engine
        self.client = registry.client
        self.ids = IdAllocator(self.client, engine.id_retry_attempts, engine.id_retry_backoff)
        poller = GuestNetworkPoller(self.client, engine.agent_poll_interval, engine.agent_poll_deadline)
        self.reader = StateReader(self.client, poller)
        self.diff = AttachmentDiff(self.client, self.translator)
        self.drift = DriftReconciler(self.reader, self.translator)
        self.attachment_strategy = engine.attachment_strategy.get(self.kind, self.attachment_strategy)

    async def status(self, spec: GuestSpec) -> ProviderStatus:
        """Check whether the guest exists."""
        if spec.vmid is None:
            return ProviderStatus.ABSENT
        try:
            ref = await self.reader.locate(spec.vmid)
        except PveApiError as e:
            logger.error(f"Error checking guest {spec.vmid}: {e}")
            return ProviderStatus.ERROR

        if ref is None:
            return ProviderStatus.ABSENT
        if ref.kind != self.kind:
            logger.warning(f"Guest {spec.vmid} exists but is a {ref.kind} guest, not {self.kind}")
            return ProviderStatus.UNKNOWN
        return ProviderStatus.PRESENT

    async def validate_spec(self, spec: GuestSpec) -> bool:
        """Validate that a spec can be translated."""
        if not isinstance(spec, self.spec_class):
            logger.error(f"{self.kind} provider cannot manage {type(spec).__name__}")
            return False
        try:
            self.translator.create_params(self.translator.to_remote(spec))
        except (TranslationError, ValueError) as e:
            logger.error(f"Invalid {self.kind} spec: {e}")
            return False
        return True

    async def create(self, spec: GuestSpec) -> GuestSpec:
        """Create or clone a guest, start it if wanted and read it back."""
        draft = self.translator.to_remote(spec)
        logger.info(f"Creating {self.kind} guest {spec.vmid or '(next free id)'} on node {spec.node}")

        if spec.clone is None:
            async def create_fn(vmid: int) -> GuestRef:
                return await self._create_fresh(spec, draft, vmid)

            with guest_operation("create", spec.vmid):
                ref = await self.ids.allocate_and_create(spec.vmid, create_fn)
        else:
            source = await self._resolve_clone_source(spec)

            async def clone_fn(vmid: int) -> GuestRef:
                return await self._clone(spec, source, vmid)

            with guest_operation("clone", spec.vmid):
                ref = await self.ids.allocate_and_create(spec.vmid, clone_fn)

        try:
            return await self._complete_create(spec, draft, ref)
        except PveshapeError as e:
            raise IncompleteCreateError(spec.model_copy(update={"vmid": ref.vmid}), e) from e

    async def _complete_create(self, spec: GuestSpec, draft: ConfigDraft, ref: GuestRef) -> GuestSpec:
        """Configure, start and read back a guest that now exists."""
        if spec.clone is not None:
            # Clone only takes a name; every other attribute is a follow-up update
            with guest_operation("configure cloned", ref.vmid):
                await self._push_config(ref, draft)
                if await self.client.has_pending_changes(ref):
                    await self._power_cycle(ref)

        if spec.status == "running":
            with guest_operation("start", ref.vmid):
                current = await self.reader.read(ref, StateMask.STATUS)
                if current.status != "running":
                    await self._start(ref)

        with guest_operation("read back", ref.vmid):
            remote = await self.reader.read(ref, StateMask.EVERYTHING)

        logger.info(f"Created {self.kind} guest {ref.vmid}")
        return self.drift.apply(spec, remote)

    async def read(self, state: GuestSpec) -> Optional[GuestSpec]:
        """Refresh tracked state, None if the guest is gone."""
        with guest_operation("read", state.vmid):
            return await self.drift.refresh(state)

    async def update(self, spec: GuestSpec, state: GuestSpec) -> GuestSpec:
        """Push configuration, restart on pending changes and fix power state."""
        desired = carry_computed(spec, state)
        ref = GuestRef(node=state.node, vmid=state.vmid, kind=self.kind)
        draft = self.translator.to_remote(desired)
        logger.info(f"Updating {self.kind} guest {ref.vmid}")

        with guest_operation("update", ref.vmid):
            await self._push_config(ref, draft)
            if await self.client.has_pending_changes(ref):
                await self._power_cycle(ref)

        # Config first; status only once any power transition has been issued
        with guest_operation("read back", ref.vmid):
            configured = self.drift.apply(desired, await self.reader.read(ref, StateMask.CONFIG))

        with guest_operation("change power state of", ref.vmid):
            observed = await self.reader.read(ref, StateMask.STATUS)
            if desired.status != observed.status:
                if desired.status == "running":
                    await self._start(ref)
                else:
                    await self._stop(ref)

        with guest_operation("read back", ref.vmid):
            final = await self.reader.read(ref, StateMask.STATUS | StateMask.NET)

        return self.drift.apply(configured, final)

    async def delete(self, state: GuestSpec) -> None:
        """Stop and delete a guest; a missing guest counts as deleted."""
        if state.vmid is None:
            return

        with guest_operation("delete", state.vmid):
            ref = await self.reader.locate(state.vmid)
            if ref is None or ref.kind != self.kind:
                logger.info(f"Guest {state.vmid} already absent")
                return

            current = await self.reader.read(ref, StateMask.STATUS)
            if current.status == "running":
                await self._stop(ref)

            logger.info(f"Deleting {self.kind} guest {ref.vmid}")
            await self.client.delete_guest(ref)

    async def import_state(self, vmid: int) -> GuestSpec:
        """Importing existing guests is not supported."""
        raise ImportNotSupportedError(self.kind)

    async def _create_fresh(self, spec: GuestSpec, draft: ConfigDraft, vmid: int) -> GuestRef:
        ref = GuestRef(node=spec.node, vmid=vmid, kind=self.kind)
        logger.debug(f"Creating guest {vmid}")
        await self.client.create_guest(ref, self.translator.create_params(draft))
        return ref

    async def _clone(self, spec: GuestSpec, source: GuestRef, vmid: int) -> GuestRef:
        ref = GuestRef(node=spec.node, vmid=vmid, kind=self.kind)
        logger.info(f"Cloning guest {source.vmid} into {vmid}")
        await self.client.clone_guest(source, ref, self.translator.clone_params(spec))
        return ref

    async def _resolve_clone_source(self, spec: GuestSpec) -> GuestRef:
        """Resolve the clone source by id on the target node, or by name."""
        if spec.clone.isdigit():
            return GuestRef(node=spec.node, vmid=int(spec.clone), kind=self.kind)

        with guest_operation("look up clone source for", spec.vmid):
            source = await self.client.find_guest_by_name(spec.clone)
        if source is None or source.kind != self.kind:
            raise CloneSourceNotFoundError(spec.clone)
        return source

    async def _push_config(self, ref: GuestRef, draft: ConfigDraft):
        """Apply a draft's options and devices to an existing guest."""
        current = await self.client.get_config(ref)
        params = draft.update_params(current)
        plan = self.diff.plan(self.translator.attachments_from_remote(current), draft.attachments)
        logger.debug(f"Device plan for guest {ref.vmid}: {plan.describe()}")

        if self.attachment_strategy == "config":
            residual = self.diff.fold_into(plan, params)
            if params:
                await self.client.update_config(ref, params)
            await self.diff.apply(ref, residual)
        else:
            await self.diff.apply(ref, plan)
            if params:
                await self.client.update_config(ref, params)

        if not plan.empty:
            draft.attachments = await self.diff.refresh_volumes(ref, plan.merged)

    async def _power_cycle(self, ref: GuestRef):
        # The reboot endpoint can hang indefinitely, so restart with an
        # explicit stop and start. This is a hard stop of the guest.
        logger.info(f"Guest {ref.vmid} has pending changes, restarting it")
        await self._stop(ref)
        await self._start(ref)

    async def _start(self, ref: GuestRef):
        logger.info(f"Starting guest {ref.vmid}")
        await self.client.start_guest(ref)

    async def _stop(self, ref: GuestRef):
        logger.info(f"Stopping guest {ref.vmid}")
        await self.client.stop_guest(ref)
