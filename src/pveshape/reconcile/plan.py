"""Comparison of desired specs against tracked state."""

from typing import Any, List, Optional, TypeVar

from pydantic import BaseModel

from pveshape.models.guest import GuestSpec


S = TypeVar("S", bound=GuestSpec)

NESTED_COMPUTED = ("volume", "mac_address")
NEVER_COMPARED = {"ipv4_address", "ensure"}


def _carry_nested(want: Any, have: Any) -> Any:
    """Fill computed attributes of nested records from their tracked counterpart."""
    if isinstance(want, dict) and isinstance(have, dict):
        return {key: _carry_nested(value, have.get(key)) for key, value in want.items()}
    if isinstance(want, BaseModel) and isinstance(have, BaseModel):
        update = {
            name: getattr(have, name)
            for name in NESTED_COMPUTED
            if name in type(want).model_fields and getattr(want, name) is None and getattr(have, name, None) is not None
        }
        if update:
            return want.model_copy(update=update)
    return want


def carry_computed(desired: S, state: Optional[GuestSpec]) -> S:
    """Use tracked values for computed attributes the declaration leaves unset."""
    if state is None or type(state) is not type(desired):
        return desired

    update = {}
    for name in type(desired).COMPUTED:
        if getattr(desired, name) is None:
            update[name] = getattr(state, name)

    for name in type(desired).model_fields:
        if name in update:
            continue
        value = getattr(desired, name)
        carried = _carry_nested(value, getattr(state, name))
        if carried is not value:
            update[name] = carried

    return desired.model_copy(update=update) if update else desired


def requires_replace(desired: GuestSpec, state: GuestSpec) -> List[str]:
    """Attributes whose change means delete and create instead of update."""
    if type(desired) is not type(state):
        return ["kind"]
    return [
        name for name in type(desired).REPLACE_ONLY
        if getattr(desired, name) != getattr(state, name)
    ]


def changed_fields(desired: GuestSpec, state: GuestSpec) -> List[str]:
    """Top-level attributes that differ between desired and tracked state."""
    want = desired.model_dump(mode="json")
    have = state.model_dump(mode="json")
    return sorted(
        name for name in want
        if name not in NEVER_COMPARED and want[name] != have.get(name)
    )
