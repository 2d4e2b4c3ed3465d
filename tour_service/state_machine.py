"""
Tour booking state machine.

`decide` validates an action against the transition table and the actor's
permissions and returns a `Decision` describing the change. It never touches
the database; `crud.apply_transition` commits the decision.
"""
import datetime
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple

from .errors import Forbidden, InvalidTransition, ValidationError
from .models import ActorRole, TourStatus, TERMINAL_STATUSES
from .schemas import Actor, TimeWindow


class TourAction(str, Enum):
    CONFIRM = "confirm"
    REQUEST_RESCHEDULE = "request_reschedule"
    CANCEL = "cancel"
    COMPLETE = "complete"
    MARK_NO_SHOW = "mark_no_show"


AGENT_ADMIN = frozenset({ActorRole.AGENT, ActorRole.ADMIN})
EVERYONE = frozenset({ActorRole.USER, ActorRole.AGENT, ActorRole.ADMIN})

# (from, action) -> (allowed roles, to)
TRANSITIONS: Dict[Tuple[TourStatus, TourAction], Tuple[FrozenSet[ActorRole], TourStatus]] = {
    (TourStatus.PENDING, TourAction.CONFIRM): (AGENT_ADMIN, TourStatus.CONFIRMED),
    (TourStatus.PENDING, TourAction.REQUEST_RESCHEDULE): (EVERYONE, TourStatus.RESCHEDULE_REQUESTED),
    (TourStatus.PENDING, TourAction.CANCEL): (EVERYONE, TourStatus.CANCELLED),
    (TourStatus.CONFIRMED, TourAction.REQUEST_RESCHEDULE): (EVERYONE, TourStatus.RESCHEDULE_REQUESTED),
    (TourStatus.CONFIRMED, TourAction.CANCEL): (EVERYONE, TourStatus.CANCELLED),
    (TourStatus.CONFIRMED, TourAction.COMPLETE): (AGENT_ADMIN, TourStatus.COMPLETED),
    (TourStatus.CONFIRMED, TourAction.MARK_NO_SHOW): (AGENT_ADMIN, TourStatus.NO_SHOW),
    (TourStatus.RESCHEDULE_REQUESTED, TourAction.CONFIRM): (AGENT_ADMIN, TourStatus.CONFIRMED),
    (TourStatus.RESCHEDULE_REQUESTED, TourAction.CANCEL): (AGENT_ADMIN, TourStatus.CANCELLED),
}


def roles_for_action(action: TourAction) -> FrozenSet[ActorRole]:
    """Every role that may perform the action from at least one status."""
    roles = frozenset()
    for (_, candidate), (allowed, _) in TRANSITIONS.items():
        if candidate == action:
            roles |= allowed
    return roles


ACTION_ROLES: Dict[TourAction, FrozenSet[ActorRole]] = {action: roles_for_action(action) for action in TourAction}


@dataclass(frozen=True)
class TransitionPayload:
    new_time: Optional[TimeWindow] = None
    reason: Optional[str] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class Decision:
    action: TourAction
    actor: Actor
    from_status: TourStatus
    to_status: TourStatus
    new_start: Optional[datetime.datetime] = None
    new_end: Optional[datetime.datetime] = None
    proposed_start: Optional[datetime.datetime] = None
    proposed_end: Optional[datetime.datetime] = None
    clear_proposal: bool = False
    notes_entry: Optional[str] = None
    assign_meeting_link: bool = False

    @property
    def changes_interval(self) -> bool:
        return self.new_start is not None


def check_actor(booking, actor: Actor, action: TourAction) -> None:
    """Raises Forbidden unless the actor may perform `action` on this booking."""
    if actor.role not in ACTION_ROLES[action]:
        raise Forbidden(f"A {actor.role.value} is not allowed to {action.value.replace('_', ' ')} tours.")
    if actor.role == ActorRole.USER and actor.id != booking.requester_id:
        raise Forbidden("Only the person who requested this tour can change it.")
    if actor.role == ActorRole.AGENT and actor.id != booking.agent_id:
        raise Forbidden("Only the agent assigned to this tour can change it.")


def check_party(booking, actor: Actor) -> None:
    """Raises Forbidden unless the actor is the requester, the agent or an admin."""
    if actor.role == ActorRole.ADMIN:
        return
    if actor.role == ActorRole.USER and actor.id == booking.requester_id:
        return
    if actor.role == ActorRole.AGENT and actor.id == booking.agent_id:
        return
    raise Forbidden("You are not a party to this tour.")


def _require_text(value: Optional[str], what: str) -> str:
    if value is None or not value.strip():
        raise ValidationError(f"A {what} is required.")
    return value.strip()


def _check_window(window: Optional[TimeWindow]) -> None:
    if window is not None and window.end <= window.start:
        raise ValidationError("The new end time must be after the new start time.")


def format_note(action: TourAction, actor: Actor, text: str) -> str:
    return f"[{action.value} by {actor.role.value}] {text}"


def decide(booking, action: TourAction, actor: Actor, payload: TransitionPayload = TransitionPayload()) -> Decision:
    """
    Validates `action` against the booking's current status.

    Order of checks: actor permission (Forbidden), transition table
    (InvalidTransition), payload (ValidationError).
    """
    check_actor(booking, actor, action)

    current = TourStatus(booking.status)
    if current in TERMINAL_STATUSES:
        raise InvalidTransition(f"This tour is already {current.value} and can no longer be changed.")

    entry = TRANSITIONS.get((current, action))
    if entry is None or actor.role not in entry[0]:
        raise InvalidTransition(
            f"Cannot {action.value.replace('_', ' ')} a tour that is {current.value.replace('_', ' ')}."
        )
    target = entry[1]

    if action == TourAction.CONFIRM:
        _check_window(payload.new_time)
        new_start = new_end = None
        if payload.new_time is not None:
            new_start, new_end = payload.new_time.start, payload.new_time.end
        elif current == TourStatus.RESCHEDULE_REQUESTED and booking.proposed_start is not None:
            new_start, new_end = booking.proposed_start, booking.proposed_end
        if new_start == booking.start and new_end == booking.end:
            new_start = new_end = None
        return Decision(
            action=action, actor=actor, from_status=current, to_status=target,
            new_start=new_start, new_end=new_end, clear_proposal=True,
            assign_meeting_link=bool(booking.is_virtual) and not booking.meeting_link,
        )

    if action == TourAction.REQUEST_RESCHEDULE:
        reason = _require_text(payload.reason, "reason for rescheduling")
        _check_window(payload.new_time)
        proposed_start = proposed_end = None
        text = reason
        if payload.new_time is not None:
            proposed_start, proposed_end = payload.new_time.start, payload.new_time.end
            text = f"{reason} (proposed {proposed_start.isoformat()} - {proposed_end.isoformat()})"
        return Decision(
            action=action, actor=actor, from_status=current, to_status=target,
            proposed_start=proposed_start, proposed_end=proposed_end,
            clear_proposal=payload.new_time is None,
            notes_entry=format_note(action, actor, text),
        )

    if action == TourAction.CANCEL:
        reason = _require_text(payload.reason, "cancellation reason")
        return Decision(
            action=action, actor=actor, from_status=current, to_status=target,
            clear_proposal=True, notes_entry=format_note(action, actor, reason),
        )

    if action == TourAction.COMPLETE:
        notes = _require_text(payload.notes, "completion note")
        return Decision(
            action=action, actor=actor, from_status=current, to_status=target,
            notes_entry=format_note(action, actor, notes),
        )

    # MARK_NO_SHOW
    text = payload.notes.strip() if payload.notes and payload.notes.strip() else "Requester did not attend."
    return Decision(
        action=action, actor=actor, from_status=current, to_status=target,
        notes_entry=format_note(action, actor, text),
    )
