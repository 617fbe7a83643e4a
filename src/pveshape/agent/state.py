"""Tracked guest state persisted between reconciliation passes."""

import json
import logging
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import ValidationError

from pveshape.models.guest import SPEC_CLASSES, GuestSpec


logger = logging.getLogger(__name__)


class StateStore:
    """Last known state of every managed guest, keyed by declaration key.

    Stored as ``{key: {"kind": ..., "spec": {...}}}`` in ``state.json``.
    Values the platform never reports back, such as container passwords,
    are kept here so they can be compared on the next pass.
    """

    def __init__(self, state_dir: Path):
        """Initialize state store."""
        self.state_dir = Path(state_dir)
        self.path = self.state_dir / "state.json"
        self._entries: Dict[str, GuestSpec] = {}

    def load(self):
        """Load tracked state from disk."""
        self._entries.clear()
        if not self.path.exists():
            logger.debug(f"No state file at {self.path}, starting empty")
            return

        data = json.loads(self.path.read_text())
        for key, entry in data.items():
            spec_class = SPEC_CLASSES.get(entry.get("kind"))
            if spec_class is None:
                logger.error(f"Unknown guest kind {entry.get('kind')!r} for {key} in state file")
                continue
            try:
                self._entries[key] = spec_class.model_validate(entry["spec"])
            except ValidationError as e:
                logger.error(f"Invalid tracked state for {key}: {e}")
        logger.debug(f"Loaded {len(self._entries)} tracked guest(s) from {self.path}")

    def save(self):
        """Write tracked state to disk atomically."""
        self.state_dir.mkdir(parents=True, exist_ok=True)
        data = {
            key: {"kind": spec.kind, "spec": spec.model_dump(mode="json")}
            for key, spec in sorted(self._entries.items())
        }
        tmp_path = self.path.with_suffix(".json.tmp")
        tmp_path.write_text(json.dumps(data, indent=2, sort_keys=True))
        tmp_path.replace(self.path)

    def get(self, key: str) -> Optional[GuestSpec]:
        """Get tracked state for a declaration key."""
        return self._entries.get(key)

    def put(self, key: str, spec: GuestSpec):
        """Track state for a declaration key and persist it."""
        self._entries[key] = spec
        self.save()

    def forget(self, key: str):
        """Stop tracking a declaration key and persist it."""
        if self._entries.pop(key, None) is not None:
            self.save()

    def keys(self) -> List[str]:
        """Tracked declaration keys."""
        return sorted(self._entries)

    def items(self):
        """Tracked (key, state) pairs."""
        return sorted(self._entries.items())
