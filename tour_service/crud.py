"""
Booking store: the only code that writes tour bookings.

Every write runs as one transaction that also inserts an outbox row for the
Kafka relay, so a committed change and its event are never separated.
"""
import datetime
import logging
import time
import uuid
from contextlib import ExitStack
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from . import models, schemas
from .config import settings
from .errors import InvalidTransition, NotFound, SlotConflict, Stale, ValidationError
from .locks import agent_locks, booking_locks
from .state_machine import Decision

logger = logging.getLogger("tour_service")

EVENT_TYPES = {
    models.TourStatus.PENDING: "tour.requested",
    models.TourStatus.CONFIRMED: "tour.confirmed",
    models.TourStatus.RESCHEDULE_REQUESTED: "tour.reschedule_requested",
    models.TourStatus.CANCELLED: "tour.cancelled",
    models.TourStatus.COMPLETED: "tour.completed",
    models.TourStatus.NO_SHOW: "tour.no_show",
}

OnCommit = Optional[Callable[[schemas.BookingEvent], None]]


@dataclass
class Committed:
    booking: models.TourBooking
    event: schemas.BookingEvent


def _utcnow() -> datetime.datetime:
    return datetime.datetime.utcnow()


def run_in_transaction(db: Session, work: Callable, description: str):
    """
    Runs `work()` and commits, retrying transient database errors.

    The whole unit of work is re-run on a rolled-back session, so a retry
    never applies a change twice. Business errors roll back and propagate.
    """
    max_retries = settings.STORE_MAX_RETRIES
    attempt = 0
    while True:
        attempt += 1
        try:
            result = work()
            db.commit()
            return result
        except StaleDataError:
            db.rollback()
            logger.warning(f"Concurrent update detected while trying to {description}")
            raise Stale("This tour was changed by someone else. Reload it and try again.")
        except OperationalError as e:
            db.rollback()
            if attempt >= max_retries:
                logger.error(f"Failed to {description} after {attempt} attempts: {e}")
                raise
            delay = settings.STORE_RETRY_BACKOFF_SECONDS * (2 ** (attempt - 1))
            logger.warning(
                f"Database attempt {attempt}/{max_retries} to {description} failed: {e}. Retrying in {delay} seconds...")
            time.sleep(delay)
        except Exception:
            db.rollback()
            raise


def _lock_agent_scope(db: Session, agent_id: int) -> None:
    """Serializes writes for one agent across processes (PostgreSQL only)."""
    if db.get_bind().dialect.name == "postgresql":
        db.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": agent_id})


def check_booking_conflict(db: Session, agent_id: int, start: datetime.datetime, end: datetime.datetime,
                           exclude_booking_id: Optional[int] = None, buffer_minutes: Optional[int] = None) -> bool:
    """
    Checks if a tour for the given agent and interval conflicts with any of
    the agent's holding bookings (widened by the slot buffer) or blocked times.

    Returns True if a conflict exists, False otherwise.
    """
    if buffer_minutes is None:
        buffer_minutes = settings.SLOT_BUFFER_MINUTES
    buffer = datetime.timedelta(minutes=buffer_minutes)
    # The logic for an overlap is:
    # (Existing Start - Buffer < New End) AND (Existing End + Buffer > New Start)
    criteria = [
        models.TourBooking.agent_id == agent_id,
        models.TourBooking.status.in_(models.HOLDING_STATUSES),
        models.TourBooking.start < end + buffer,
        models.TourBooking.end > start - buffer,
    ]
    if exclude_booking_id is not None:
        criteria.append(models.TourBooking.id != exclude_booking_id)
    existing_booking = db.query(models.TourBooking).filter(*criteria).first()
    if existing_booking is not None:
        return True

    blocked = db.query(models.AgentBlockedTime).filter(
        models.AgentBlockedTime.agent_id == agent_id,
        models.AgentBlockedTime.start < end,
        models.AgentBlockedTime.end > start,
    ).first()
    return blocked is not None


def build_event(booking: models.TourBooking, previous_status: Optional[models.TourStatus],
                event_type: Optional[str] = None) -> schemas.BookingEvent:
    status = models.TourStatus(booking.status)
    return schemas.BookingEvent(
        type=event_type or EVENT_TYPES[status],
        booking_id=booking.id,
        agent_id=booking.agent_id,
        property_id=booking.property_id,
        requester_id=booking.requester_id,
        status=status,
        previous_status=previous_status,
        version=booking.version,
        booking=schemas.TourBookingRead.model_validate(booking),
    )


def _add_outbox_event(db: Session, event: schemas.BookingEvent) -> None:
    """Adds the event to the outbox. Does NOT commit."""
    db.add(models.OutboxEvent(
        topic=settings.KAFKA_TOUR_TOPIC,
        payload=event.model_dump_json(),
        status="PENDING"
    ))


def _append_note(booking: models.TourBooking, entry: Optional[str]) -> None:
    if not entry:
        return
    booking.notes = f"{booking.notes}\n{entry}" if booking.notes else entry


def _notify(on_commit: OnCommit, event: schemas.BookingEvent) -> None:
    if on_commit is None:
        return
    try:
        on_commit(event)
    except Exception as e:
        # The change is committed and the outbox row will still be relayed
        logger.error(f"Failed to publish event {event.event_id} for tour {event.booking_id}: {e}")


def meeting_link_for(booking_id: int) -> str:
    return f"{settings.MEETING_LINK_BASE_URL}/{booking_id}-{uuid.uuid4().hex[:12]}"


def create_booking(db: Session, draft: schemas.TourDraft, on_commit: OnCommit = None) -> Committed:
    """
    Atomically checks the agent's calendar and creates a pending tour along
    with its participants and an outbox event.

    Raises SlotConflict without writing anything if the interval is taken.
    """
    with ExitStack() as stack:
        stack.enter_context(agent_locks.hold(draft.agent_id))

        def work() -> Committed:
            _lock_agent_scope(db, draft.agent_id)
            if check_booking_conflict(db, draft.agent_id, draft.start, draft.end):
                raise SlotConflict("That time slot was just taken. Please choose another time.")

            now = _utcnow()
            db_booking = models.TourBooking(
                property_id=draft.property_id,
                agent_id=draft.agent_id,
                requester_id=draft.requester_id,
                start=draft.start,
                end=draft.end,
                status=models.TourStatus.PENDING,
                is_virtual=draft.is_virtual,
                last_action_by=draft.requester_id,
                last_action_type="created",
                created_at=now,
                updated_at=now,
            )
            if draft.notes and draft.notes.strip():
                db_booking.notes = f"[request by user] {draft.notes.strip()}"
            for position, participant in enumerate(draft.participants):
                db_booking.participants.append(_participant_row(position, participant))

            db.add(db_booking)
            db.flush()  # assigns the id and version

            # Nobody can see the row before commit, so this never waits
            stack.enter_context(booking_locks.hold(db_booking.id))

            event = build_event(db_booking, previous_status=None)
            _add_outbox_event(db, event)
            return Committed(booking=db_booking, event=event)

        committed = run_in_transaction(db, work, f"create a tour for agent {draft.agent_id}")
        logger.info(f"Created tour {committed.booking.id} for agent {draft.agent_id} "
                    f"from {draft.start} to {draft.end}")
        _notify(on_commit, committed.event)
        return committed


def apply_transition(db: Session, booking_id: int, decision: Decision,
                     expected_version: Optional[int] = None, on_commit: OnCommit = None) -> Committed:
    """
    Commits a state machine decision with compare-and-swap semantics.

    Raises NotFound, Stale (version or status moved on since the decision was
    made) or SlotConflict (new interval is taken). On failure the booking is
    left exactly as it was.
    """
    with ExitStack() as stack:
        stack.enter_context(booking_locks.hold(booking_id))
        agent_id = get_booking(db, booking_id).agent_id
        if decision.changes_interval:
            stack.enter_context(agent_locks.hold(agent_id))

        def work() -> Committed:
            booking = get_booking(db, booking_id)
            if expected_version is not None and booking.version != expected_version:
                raise Stale(
                    f"Tour {booking_id} was changed by someone else "
                    f"(version {booking.version}, expected {expected_version}). Reload it and try again.")
            if booking.status != decision.from_status:
                raise Stale(f"Tour {booking_id} is now {booking.status.value}. Reload it and try again.")

            if decision.changes_interval:
                if decision.new_end <= decision.new_start:
                    raise ValidationError("The new end time must be after the new start time.")
                _lock_agent_scope(db, agent_id)
                if check_booking_conflict(db, agent_id, decision.new_start, decision.new_end,
                                          exclude_booking_id=booking_id):
                    raise SlotConflict("The new time overlaps another tour for this agent.")
                booking.start = decision.new_start
                booking.end = decision.new_end

            now = _utcnow()
            previous_status = models.TourStatus(booking.status)
            booking.status = decision.to_status
            _append_note(booking, decision.notes_entry)

            if decision.proposed_start is not None:
                booking.proposed_start = decision.proposed_start
                booking.proposed_end = decision.proposed_end
            elif decision.clear_proposal:
                booking.proposed_start = None
                booking.proposed_end = None

            if decision.assign_meeting_link:
                booking.meeting_link = meeting_link_for(booking.id)

            if decision.to_status == models.TourStatus.CONFIRMED:
                booking.confirmed_at = now
            elif decision.to_status == models.TourStatus.CANCELLED:
                booking.cancelled_at = now
            elif decision.to_status == models.TourStatus.COMPLETED:
                booking.completed_at = now

            booking.last_action_by = decision.actor.id
            booking.last_action_type = decision.action.value
            booking.updated_at = now
            db.flush()  # bumps the version, or raises StaleDataError

            event = build_event(booking, previous_status=previous_status)
            _add_outbox_event(db, event)
            return Committed(booking=booking, event=event)

        committed = run_in_transaction(
            db, work, f"{decision.action.value} tour {booking_id}")
        logger.info(f"Tour {booking_id}: {decision.from_status.value} -> {decision.to_status.value} "
                    f"by {decision.actor.role.value} {decision.actor.id}")
        _notify(on_commit, committed.event)
        return committed


def get_booking(db: Session, booking_id: int) -> models.TourBooking:
    """Loads the current row, discarding any stale copy held by the session."""
    booking = db.get(models.TourBooking, booking_id, populate_existing=True)
    if booking is None:
        raise NotFound(f"Tour {booking_id} was not found.")
    return booking


def list_bookings_for_scope(db: Session, agent_id: Optional[int] = None, user_id: Optional[int] = None,
                            property_id: Optional[int] = None, start: Optional[datetime.datetime] = None,
                            end: Optional[datetime.datetime] = None,
                            statuses: Optional[Sequence[models.TourStatus]] = None,
                            skip: int = 0, limit: int = 100) -> List[models.TourBooking]:
    query = db.query(models.TourBooking)
    if agent_id is not None:
        query = query.filter(models.TourBooking.agent_id == agent_id)
    if user_id is not None:
        query = query.filter(models.TourBooking.requester_id == user_id)
    if property_id is not None:
        query = query.filter(models.TourBooking.property_id == property_id)
    if start is not None:
        query = query.filter(models.TourBooking.end > start)
    if end is not None:
        query = query.filter(models.TourBooking.start < end)
    if statuses:
        query = query.filter(models.TourBooking.status.in_(statuses))
    return query.order_by(models.TourBooking.start, models.TourBooking.id).offset(skip).limit(limit).all()


def get_holding_bookings(db: Session, agent_id: int, start: datetime.datetime,
                         end: datetime.datetime) -> List[models.TourBooking]:
    """The agent's bookings that occupy calendar time within [start, end)."""
    return db.query(models.TourBooking).filter(
        models.TourBooking.agent_id == agent_id,
        models.TourBooking.status.in_(models.HOLDING_STATUSES),
        models.TourBooking.start < end,
        models.TourBooking.end > start,
    ).order_by(models.TourBooking.start).all()


def get_blocked_times(db: Session, agent_id: int, start: datetime.datetime,
                      end: datetime.datetime) -> List[models.AgentBlockedTime]:
    return db.query(models.AgentBlockedTime).filter(
        models.AgentBlockedTime.agent_id == agent_id,
        models.AgentBlockedTime.start < end,
        models.AgentBlockedTime.end > start,
    ).order_by(models.AgentBlockedTime.start).all()


def create_blocked_time(db: Session, agent_id: int, blocked: schemas.BlockedTimeCreate,
                        created_by: int) -> models.AgentBlockedTime:
    with agent_locks.hold(agent_id):
        def work():
            db_blocked = models.AgentBlockedTime(
                agent_id=agent_id,
                start=blocked.start,
                end=blocked.end,
                reason=blocked.reason,
                created_by=created_by,
            )
            db.add(db_blocked)
            return db_blocked

        db_blocked = run_in_transaction(db, work, f"block time for agent {agent_id}")
        db.refresh(db_blocked)
        return db_blocked


def _participant_row(position: int, participant: schemas.ParticipantCreate) -> models.TourParticipant:
    return models.TourParticipant(
        position=position,
        name=participant.name,
        email=participant.email,
        phone=participant.phone,
        relationship_to_requester=participant.relationship,
    )


def _change_participants(db: Session, booking_id: int, actor: schemas.Actor, change: Callable,
                         expected_version: Optional[int], description: str,
                         on_commit: OnCommit) -> Committed:
    with booking_locks.hold(booking_id):
        def work() -> Committed:
            booking = get_booking(db, booking_id)
            if expected_version is not None and booking.version != expected_version:
                raise Stale(f"Tour {booking_id} was changed by someone else. Reload it and try again.")
            if booking.status not in models.PARTICIPANT_EDITABLE_STATUSES:
                raise InvalidTransition(
                    f"Participants can only be changed while a tour is pending or confirmed, "
                    f"this one is {booking.status.value}.")
            change(booking)
            for position, row in enumerate(booking.participants):
                row.position = position
            booking.last_action_by = actor.id
            booking.last_action_type = description
            booking.updated_at = _utcnow()
            db.flush()

            status = models.TourStatus(booking.status)
            event = build_event(booking, previous_status=status, event_type="tour.updated")
            _add_outbox_event(db, event)
            return Committed(booking=booking, event=event)

        committed = run_in_transaction(db, work, f"{description.replace('_', ' ')} on tour {booking_id}")
        _notify(on_commit, committed.event)
        return committed


def add_participant(db: Session, booking_id: int, participant: schemas.ParticipantCreate, actor: schemas.Actor,
                    expected_version: Optional[int] = None, on_commit: OnCommit = None) -> Committed:
    def change(booking):
        booking.participants.append(_participant_row(len(booking.participants), participant))

    return _change_participants(db, booking_id, actor, change, expected_version, "add_participant", on_commit)


def remove_participant(db: Session, booking_id: int, index: int, actor: schemas.Actor,
                       expected_version: Optional[int] = None, on_commit: OnCommit = None) -> Committed:
    def change(booking):
        if index < 0 or index >= len(booking.participants):
            raise NotFound(f"Tour {booking_id} has no participant at position {index}.")
        booking.participants.pop(index)

    return _change_participants(db, booking_id, actor, change, expected_version, "remove_participant", on_commit)


def get_expired_requests(db: Session, now: datetime.datetime) -> List[models.TourBooking]:
    """Unconfirmed tours whose start time has already passed."""
    return db.query(models.TourBooking).filter(
        models.TourBooking.status.in_([models.TourStatus.PENDING, models.TourStatus.RESCHEDULE_REQUESTED]),
        models.TourBooking.start < now,
    ).order_by(models.TourBooking.start).all()


def get_agent_working_hours(db: Session, agent_id: int) -> List[models.AgentWorkingHours]:
    return db.query(models.AgentWorkingHours).filter(
        models.AgentWorkingHours.agent_id == agent_id
    ).order_by(models.AgentWorkingHours.day_of_week).all()


def replace_agent_working_hours(db: Session, agent_id: int,
                                days: Sequence[schemas.WorkingDay]) -> List[models.AgentWorkingHours]:
    """Swaps the agent's whole weekly schedule in one transaction."""
    with agent_locks.hold(agent_id):
        def work():
            db.query(models.AgentWorkingHours).filter(
                models.AgentWorkingHours.agent_id == agent_id
            ).delete()
            db.flush()
            for day in days:
                db.add(models.AgentWorkingHours(
                    agent_id=agent_id,
                    day_of_week=day.day_of_week,
                    start_time=day.start_time,
                    end_time=day.end_time,
                    is_active=day.is_active,
                ))

        run_in_transaction(db, work, f"set working hours for agent {agent_id}")
        logger.info(f"Agent {agent_id} working hours set for weekdays {sorted(d.day_of_week for d in days)}")
        return get_agent_working_hours(db, agent_id)
