"""Attribute locks that pin canonical profile values against automatic overwrite."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List

from .errors import UnknownAttribute
from .learner_profile import PROFILE_ATTRIBUTES


@dataclass(frozen=True)
class LockChange:
    locked: List[str]
    changed: bool


def validate_attribute(attribute: str) -> str:
    name = (attribute or "").strip()
    if name not in PROFILE_ATTRIBUTES:
        raise UnknownAttribute(
            f"Unknown profile attribute: {attribute!r}.",
            details={"allowed": sorted(PROFILE_ATTRIBUTES)},
        )
    return name


def lock_attribute(locked: Iterable[str], attribute: str) -> LockChange:
    name = validate_attribute(attribute)
    current = list(locked)
    if name in current:
        return LockChange(locked=current, changed=False)
    return LockChange(locked=[*current, name], changed=True)


def unlock_attribute(locked: Iterable[str], attribute: str) -> LockChange:
    name = validate_attribute(attribute)
    current = list(locked)
    if name not in current:
        return LockChange(locked=current, changed=False)
    return LockChange(locked=[entry for entry in current if entry != name], changed=True)


__all__ = ["LockChange", "lock_attribute", "unlock_attribute", "validate_attribute"]
