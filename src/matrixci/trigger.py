# trigger.py
from __future__ import annotations

from typing import Any, Dict, Iterable, Optional

from pydantic import BaseModel, ValidationError, field_validator

from .errors import EventPayloadError
from .model import ChangeAction, Event, EventKind, coerce_action

ELIGIBLE_ACTIONS = frozenset(ChangeAction)

_KIND_ALIASES = {
    "push": EventKind.PUSH,
    "change_request": EventKind.CHANGE_REQUEST,
    "change-request": EventKind.CHANGE_REQUEST,
    "pull_request": EventKind.CHANGE_REQUEST,
}

# hosting-platform spellings of the same transitions
_ACTION_ALIASES = {
    "synchronize": ChangeAction.SYNCHRONIZED.value,
    "ready_for_review": ChangeAction.MARKED_READY.value,
    "marked-ready": ChangeAction.MARKED_READY.value,
}


def _branch_name(ref: str) -> str:
    if ref.startswith("refs/heads/"):
        return ref[len("refs/heads/"):]
    return ref


def evaluate(event: Event, watched_branches: Iterable[str] = ("master",)) -> bool:
    """
    Decide whether the whole pipeline run is eligible to execute.

    Pure function. A push runs only on a watched branch. A change request
    runs on opened/synchronized/reopened when it is not a draft, and always
    when it has just been marked ready.
    """
    if isinstance(watched_branches, str):
        watched_branches = (watched_branches,)

    if event.kind == EventKind.PUSH:
        if not event.ref:
            return False
        return _branch_name(event.ref) in {_branch_name(b) for b in watched_branches}

    if event.kind == EventKind.CHANGE_REQUEST:
        if event.action not in ELIGIBLE_ACTIONS:
            return False
        if event.action == ChangeAction.MARKED_READY:
            return True
        return not event.draft

    return False


# ---------------------------------------------------------------------
# Payload parsing
# ---------------------------------------------------------------------

class EventPayload(BaseModel):
    kind: EventKind
    ref: Optional[str] = None
    action: Optional[str] = None
    draft: bool = False

    @field_validator("kind", mode="before")
    @classmethod
    def _normalize_kind(cls, v: Any) -> Any:
        if isinstance(v, str):
            return _KIND_ALIASES.get(v.strip().lower(), v)
        return v

    @field_validator("action", mode="before")
    @classmethod
    def _normalize_action(cls, v: Any) -> Any:
        if isinstance(v, str):
            return _ACTION_ALIASES.get(v.strip().lower(), v.strip().lower())
        return v

    def to_event(self) -> Event:
        if self.kind == EventKind.CHANGE_REQUEST and self.action is None:
            raise EventPayloadError("change_request event requires an 'action'")
        if self.kind == EventKind.PUSH and not self.ref:
            raise EventPayloadError("push event requires a 'ref'")
        action = coerce_action(self.action) if self.action is not None else None
        return Event(kind=self.kind, ref=self.ref, action=action, draft=self.draft)


def parse_event(payload: Dict[str, Any]) -> Event:
    """Validate a raw JSON-like payload into an Event."""
    try:
        return EventPayload.model_validate(payload).to_event()
    except ValidationError as e:
        raise EventPayloadError(str(e)) from e


def describe_event(event: Event) -> str:
    if event.kind == EventKind.PUSH:
        return f"push to {event.ref}"
    action = getattr(event.action, "value", event.action)
    state = "draft" if event.draft else "ready"
    return f"change_request {action} ({state})"
