"""State reconciliation engine."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Any, List, Optional, Tuple

from pveshape.agent.config import ConfigManager
from pveshape.agent.state import StateStore
from pveshape.errors import IncompleteCreateError
from pveshape.models.guest import GuestSpec
from pveshape.providers import BaseProvider, ProviderRegistry
from pveshape.reconcile.plan import carry_computed, changed_fields, requires_replace


logger = logging.getLogger(__name__)


@dataclass
class PlannedAction:
    """What a reconciliation pass would do for one declaration key."""
    key: str
    action: str
    kind: str
    vmid: Optional[int] = None
    fields: List[str] = field(default_factory=list)


def decide(spec: GuestSpec, state: Optional[GuestSpec]) -> Tuple[str, List[str]]:
    """Pick the lifecycle action that brings ``state`` to ``spec``."""
    if spec.ensure == "absent":
        return ("delete", []) if state is not None else ("none", [])
    if state is None:
        return "create", []

    replace = requires_replace(spec, state)
    if replace:
        return "replace", replace

    changed = changed_fields(carry_computed(spec, state), state)
    if changed:
        return "update", changed
    return "none", []


class StateEngine:
    """Manages state reconciliation and drift detection."""

    def __init__(self, config_manager: ConfigManager, provider_registry: ProviderRegistry, state_store: StateStore):
        """Initialize state engine."""
        self.config_manager = config_manager
        self.provider_registry = provider_registry
        self.state_store = state_store
        self.last_reconciliation: Optional[datetime] = None
        self.last_errors: Dict[str, str] = {}
        self._reconciliation_lock = asyncio.Lock()

    async def reconcile(self) -> Dict[str, str]:
        """Perform full state reconciliation.

        Returns the action taken per declaration key. A failing key is
        logged and recorded in ``last_errors``; the other keys still run.
        """
        async with self._reconciliation_lock:
            start_time = datetime.now()
            logger.info("Starting state reconciliation")
            results: Dict[str, str] = {}
            self.last_errors = {}

            for key, spec in self.config_manager.guests.items():
                try:
                    results[key] = await self._reconcile_guest(key, spec)
                except Exception as e:
                    logger.error(f"Failed to reconcile guest {key}: {e}")
                    self.last_errors[key] = str(e)
                    results[key] = "error"

            results.update(await self._remove_orphans())

            self.last_reconciliation = datetime.now()
            duration = (self.last_reconciliation - start_time).total_seconds()
            logger.info(f"State reconciliation completed in {duration:.2f}s")
            return results

    async def _refresh(self, key: str, persist: bool = True) -> Optional[GuestSpec]:
        """Re-read tracked state of a key, None if untracked or gone."""
        state = self.state_store.get(key)
        if state is None:
            return None

        refreshed = await self.provider_registry.provider_for(state).read(state)
        if persist:
            if refreshed is None:
                self.state_store.forget(key)
            else:
                self.state_store.put(key, refreshed)
        return refreshed

    async def _reconcile_guest(self, key: str, spec: GuestSpec) -> str:
        """Reconcile one declaration."""
        provider = self.provider_registry.provider_for(spec)
        if not await provider.validate_spec(spec):
            logger.warning(f"Skipping invalid guest declaration: {key}")
            return "invalid"

        state = await self._refresh(key)
        action, fields = decide(spec, state)

        if action == "delete":
            logger.info(f"Guest {key} should be absent, removing")
            await self.provider_registry.provider_for(state).delete(state)
            self.state_store.forget(key)
        elif action == "create":
            logger.info(f"Guest {key} is absent, creating")
            self.state_store.put(key, await self._create(key, provider, spec))
        elif action == "replace":
            logger.info(f"Guest {key} must be replaced, {', '.join(fields)} changed")
            await self.provider_registry.provider_for(state).delete(state)
            self.state_store.forget(key)
            self.state_store.put(key, await self._create(key, provider, spec))
        elif action == "update":
            logger.info(f"Guest {key} has drifted in {', '.join(fields)}, updating")
            self.state_store.put(key, await provider.update(spec, state))
        else:
            logger.debug(f"Guest {key} is up to date")
        return action

    async def _create(self, key: str, provider: BaseProvider, spec: GuestSpec) -> GuestSpec:
        """Create a guest, tracking it even when a later creation step fails."""
        try:
            return await provider.create(spec)
        except IncompleteCreateError as e:
            logger.warning(f"Guest {key} exists as {e.state.vmid} but its creation did not finish, tracking it")
            # The guest exists, so the next pass updates it instead of creating another
            self.state_store.put(key, e.state)
            raise

    async def _remove_orphans(self) -> Dict[str, str]:
        """Delete tracked guests whose declaration was removed."""
        results = {}
        orphans = [key for key in self.state_store.keys() if key not in self.config_manager.guests]
        if orphans and self.config_manager.load_errors:
            # A declaration that failed to load is not a removed declaration
            logger.warning(f"Not removing {len(orphans)} undeclared guest(s) while configuration has errors")
            return results

        for key in orphans:
            state = self.state_store.get(key)
            try:
                logger.info(f"Guest {key} is no longer declared, removing")
                await self.provider_registry.provider_for(state).delete(state)
                self.state_store.forget(key)
                results[key] = "delete"
            except Exception as e:
                logger.error(f"Failed to remove guest {key}: {e}")
                self.last_errors[key] = str(e)
                results[key] = "error"
        return results

    async def plan(self) -> List[PlannedAction]:
        """Work out what a reconciliation pass would do without changing anything."""
        actions = []
        async with self._reconciliation_lock:
            for key, spec in self.config_manager.guests.items():
                state = await self._refresh(key, persist=False)
                action, fields = decide(spec, state)
                vmid = state.vmid if state is not None else spec.vmid
                actions.append(PlannedAction(key=key, action=action, kind=spec.kind, vmid=vmid, fields=fields))

            if not self.config_manager.load_errors:
                for key, state in self.state_store.items():
                    if key not in self.config_manager.guests:
                        actions.append(PlannedAction(key=key, action="delete", kind=state.kind, vmid=state.vmid))
        return actions

    async def get_guest_statuses(self, refresh: bool = False) -> Dict[str, Dict[str, Any]]:
        """Get status for all declared and tracked guests."""
        statuses = {}
        keys = sorted(set(self.config_manager.guests) | set(self.state_store.keys()))
        for key in keys:
            spec = self.config_manager.get_guest_spec(key)
            state = await self._refresh(key) if refresh else self.state_store.get(key)
            record = state or spec
            statuses[key] = {
                "key": key,
                "kind": record.kind,
                "node": record.node,
                "vmid": state.vmid if state else None,
                "declared": spec is not None,
                "tracked": state is not None,
                "status": state.status if state else None,
                "desired_status": spec.status if spec else None,
                "ipv4_address": getattr(state, "ipv4_address", None) if state else None,
                "error": self.last_errors.get(key),
            }
        return statuses

    async def import_guest(self, kind: str, vmid: int) -> GuestSpec:
        """Adopt an existing guest into tracked state."""
        provider = self.provider_registry.get_provider(kind)
        if provider is None:
            raise ValueError(f"Unknown guest kind {kind!r}")
        return await provider.import_state(vmid)
