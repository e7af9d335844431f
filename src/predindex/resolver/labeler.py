"""Outcome labelers - map (condition_id, slot_index) to a Yes/No label."""

from __future__ import annotations

from typing import Callable, Protocol

from predindex.models import Outcome


class OutcomeLabeler(Protocol):
    """Returns the label for one outcome slot, or None / Outcome.UNKNOWN when not known."""

    def __call__(self, condition_id: str, slot_index: int) -> Outcome | str | None: ...


def negrisk_outcome_labeler(condition_id: str, slot_index: int) -> Outcome:
    """NegRisk adapter convention: index set 1 (slot 0) is the true/Yes position, 2 (slot 1) is No."""
    if slot_index == 0:
        return Outcome.YES
    if slot_index == 1:
        return Outcome.NO
    return Outcome.UNKNOWN


LABELERS: dict[str, Callable[[str, int], Outcome | str | None] | None] = {
    "negrisk": negrisk_outcome_labeler,
    "none": None,
}


def labeler_from_name(name: str) -> OutcomeLabeler | None:
    """Resolve the configured labeler name; unknown names raise ValueError."""
    key = (name or "none").strip().lower()
    if key not in LABELERS:
        raise ValueError(f"unknown outcome labeler {name!r}; expected one of {sorted(LABELERS)}")
    return LABELERS[key]


def coerce_outcome(value: Outcome | str | None) -> Outcome:
    """Normalize a labeler return value ('yes', 'No', Outcome.YES, True/False...)."""
    if value is None:
        return Outcome.UNKNOWN
    if isinstance(value, Outcome):
        return value
    if isinstance(value, bool):
        return Outcome.YES if value else Outcome.NO
    s = str(value).strip().lower()
    if s in ("yes", "true"):
        return Outcome.YES
    if s in ("no", "false"):
        return Outcome.NO
    return Outcome.UNKNOWN
