"""
SchedulingService: the single entry point for tour scheduling.

Composes the slot engine, the state machine, the booking store and the
notification hub. Every mutating call commits one state machine decision and
publishes the resulting event before it releases the booking's lock.
"""
import datetime
import logging
from typing import Callable, List, Optional, Sequence

from sqlalchemy.orm import Session

from . import crud, models, schemas, slot_engine
from .config import Settings, settings as default_settings
from .errors import Forbidden, SlotConflict, TourServiceError, ValidationError
from .locks import booking_locks
from .notifications import NotificationHub, Subscription, hub as default_hub
from .state_machine import TourAction, TransitionPayload, check_party, decide

logger = logging.getLogger("tour_service")

EXPIRY_REASON = "Tour request expired before it was confirmed"


class SchedulingService:
    def __init__(self, db: Session, hub: NotificationHub = default_hub, settings: Settings = default_settings,
                 clock: Callable[[], datetime.datetime] = datetime.datetime.now):
        self.db = db
        self.hub = hub
        self.settings = settings
        self.clock = clock

    # --- Availability ---

    def default_working_hours(self) -> slot_engine.WeeklyHours:
        hours = slot_engine.WorkingHours(self.settings.WORKING_HOURS_START, self.settings.WORKING_HOURS_END)
        return slot_engine.WeeklyHours.uniform(hours, self.settings.WORKING_DAYS)

    def working_hours_for(self, agent_id: int) -> slot_engine.WeeklyHours:
        """The agent's own week if they set one up, otherwise the configured default."""
        rows = crud.get_agent_working_hours(self.db, agent_id)
        if not rows:
            return self.default_working_hours()
        return slot_engine.WeeklyHours({
            row.day_of_week: slot_engine.WorkingHours(row.start_time, row.end_time)
            for row in rows if row.is_active
        })

    def get_available_slots(self, agent_id: int, property_id: int, start: datetime.datetime,
                            end: datetime.datetime, duration_minutes: int,
                            working_hours: Optional[slot_engine.Schedule] = None
                            ) -> List[schemas.AvailabilitySlot]:
        """
        Bookable windows for the agent in [start, end).

        Reads a snapshot of the agent's calendar and never waits on writers.
        `property_id` identifies the listing being toured; the agent can only
        be in one place at a time, so all of the agent's tours count.
        """
        if start >= end:
            raise ValidationError("The range end must be after the range start.")
        start, end = slot_engine.clamp_range(start, end, self.settings.MAX_LOOKAHEAD_DAYS)
        buffer = datetime.timedelta(minutes=self.settings.SLOT_BUFFER_MINUTES)
        bookings = crud.get_holding_bookings(self.db, agent_id, start - buffer, end + buffer)
        blocked = crud.get_blocked_times(self.db, agent_id, start, end)
        slots = slot_engine.compute_available_slots(
            bookings, start, end, duration_minutes,
            now=self.clock(),
            working_hours=working_hours or self.working_hours_for(agent_id),
            granularity_minutes=self.settings.SLOT_GRANULARITY_MINUTES,
            allowed_durations=self.settings.ALLOWED_DURATIONS,
            max_lookahead_days=self.settings.MAX_LOOKAHEAD_DAYS,
            blocked=blocked,
            buffer_minutes=self.settings.SLOT_BUFFER_MINUTES,
        )
        logger.info(f"Computed {len(slots)} slots for agent {agent_id} (property {property_id}) "
                    f"between {start} and {end}")
        return slots

    def _alternatives_for(self, agent_id: int, property_id: int, requested: datetime.datetime,
                          duration_minutes: int) -> List[schemas.AvailabilitySlot]:
        day_start = datetime.datetime.combine(requested.date(), datetime.time.min)
        slots = self.get_available_slots(agent_id, property_id, day_start,
                                         day_start + datetime.timedelta(days=1), duration_minutes)
        return slot_engine.nearest_alternatives(slots, requested)

    # --- Booking ---

    def request_tour(self, property_id: int, agent_id: int, requester: schemas.Actor, start: datetime.datetime,
                     duration_minutes: int, is_virtual: bool = False, notes: Optional[str] = None,
                     participants: Optional[Sequence[schemas.ParticipantCreate]] = None) -> models.TourBooking:
        if requester.role not in (models.ActorRole.USER, models.ActorRole.ADMIN):
            raise ValidationError("Tours are requested by buyers or renters, not agents.")
        if duration_minutes not in self.settings.ALLOWED_DURATIONS:
            raise ValidationError(
                f"Tour duration must be one of {sorted(self.settings.ALLOWED_DURATIONS)} minutes.")
        if start < self.clock():
            raise ValidationError("Tours cannot be requested in the past.")
        end = start + datetime.timedelta(minutes=duration_minutes)
        slot_engine.check_bookable_window(start, end, self.working_hours_for(agent_id),
                                          self.settings.SLOT_GRANULARITY_MINUTES, duration_minutes)

        draft = schemas.TourDraft(
            property_id=property_id,
            agent_id=agent_id,
            requester_id=requester.id,
            start=start,
            end=end,
            is_virtual=is_virtual,
            notes=notes,
            participants=list(participants or []),
        )
        try:
            committed = crud.create_booking(self.db, draft, on_commit=self.hub.publish)
        except SlotConflict as e:
            e.alternatives = self._alternatives_for(agent_id, property_id, start, duration_minutes)
            logger.warning(f"Rejected tour request for agent {agent_id} at {start}: slot taken")
            raise
        return committed.booking

    def _transition(self, booking_id: int, action: TourAction, actor: schemas.Actor,
                    payload: TransitionPayload, expected_version: Optional[int]) -> models.TourBooking:
        with booking_locks.hold(booking_id):
            booking = crud.get_booking(self.db, booking_id)
            decision = decide(booking, action, actor, payload)
            version = booking.version if expected_version is None else expected_version
            committed = crud.apply_transition(self.db, booking_id, decision, version, on_commit=self.hub.publish)
            return committed.booking

    def confirm_tour(self, booking_id: int, actor: schemas.Actor, new_time: Optional[schemas.TimeWindow] = None,
                     expected_version: Optional[int] = None) -> models.TourBooking:
        return self._transition(booking_id, TourAction.CONFIRM, actor,
                                TransitionPayload(new_time=new_time), expected_version)

    def request_reschedule(self, booking_id: int, actor: schemas.Actor, reason: str,
                           new_time: Optional[schemas.TimeWindow] = None,
                           expected_version: Optional[int] = None) -> models.TourBooking:
        return self._transition(booking_id, TourAction.REQUEST_RESCHEDULE, actor,
                                TransitionPayload(new_time=new_time, reason=reason), expected_version)

    def cancel_tour(self, booking_id: int, actor: schemas.Actor, reason: str,
                    expected_version: Optional[int] = None) -> models.TourBooking:
        return self._transition(booking_id, TourAction.CANCEL, actor,
                                TransitionPayload(reason=reason), expected_version)

    def complete_tour(self, booking_id: int, actor: schemas.Actor, notes: str,
                      expected_version: Optional[int] = None) -> models.TourBooking:
        return self._transition(booking_id, TourAction.COMPLETE, actor,
                                TransitionPayload(notes=notes), expected_version)

    def mark_no_show(self, booking_id: int, actor: schemas.Actor, notes: Optional[str] = None,
                     expected_version: Optional[int] = None) -> models.TourBooking:
        return self._transition(booking_id, TourAction.MARK_NO_SHOW, actor,
                                TransitionPayload(notes=notes), expected_version)

    # --- Participants ---

    def add_participant(self, booking_id: int, actor: schemas.Actor, participant: schemas.ParticipantCreate,
                        expected_version: Optional[int] = None) -> models.TourBooking:
        check_party(crud.get_booking(self.db, booking_id), actor)
        return crud.add_participant(self.db, booking_id, participant, actor, expected_version,
                                    on_commit=self.hub.publish).booking

    def remove_participant(self, booking_id: int, actor: schemas.Actor, index: int,
                           expected_version: Optional[int] = None) -> models.TourBooking:
        check_party(crud.get_booking(self.db, booking_id), actor)
        return crud.remove_participant(self.db, booking_id, index, actor, expected_version,
                                       on_commit=self.hub.publish).booking

    # --- Agent calendar ---

    def get_working_hours(self, agent_id: int) -> List[models.AgentWorkingHours]:
        return crud.get_agent_working_hours(self.db, agent_id)

    def set_working_hours(self, actor: schemas.Actor, agent_id: int,
                          week: schemas.WeeklyHoursUpdate) -> List[models.AgentWorkingHours]:
        """Replaces the agent's weekly schedule. Existing tours are left as they are."""
        self._check_calendar_owner(actor, agent_id)
        return crud.replace_agent_working_hours(self.db, agent_id, week.days)

    @staticmethod
    def _check_calendar_owner(actor: schemas.Actor, agent_id: int) -> None:
        if actor.role == models.ActorRole.USER or (actor.role == models.ActorRole.AGENT and actor.id != agent_id):
            raise Forbidden("Only the agent or an admin can change an agent's calendar.")

    def block_time(self, actor: schemas.Actor, agent_id: int,
                   blocked: schemas.BlockedTimeCreate) -> models.AgentBlockedTime:
        self._check_calendar_owner(actor, agent_id)
        return crud.create_blocked_time(self.db, agent_id, blocked, created_by=actor.id)

    # --- Reads ---

    def get_tour(self, booking_id: int, actor: schemas.Actor) -> models.TourBooking:
        booking = crud.get_booking(self.db, booking_id)
        check_party(booking, actor)
        return booking

    def list_tours(self, actor: schemas.Actor, scope: Optional[schemas.ScopeFilter] = None,
                   start: Optional[datetime.datetime] = None, end: Optional[datetime.datetime] = None,
                   statuses: Optional[Sequence[models.TourStatus]] = None,
                   skip: int = 0, limit: int = 100) -> List[models.TourBooking]:
        """
        Current state for a scope. Clients call this after (re)connecting to
        the change stream to reconcile what they missed.
        """
        scope = self.restrict_scope(actor, scope)
        return crud.list_bookings_for_scope(
            self.db, agent_id=scope.agent_id, user_id=scope.user_id, property_id=scope.property_id,
            start=start, end=end, statuses=statuses, skip=skip, limit=limit,
        )

    @staticmethod
    def restrict_scope(actor: schemas.Actor, scope: Optional[schemas.ScopeFilter]) -> schemas.ScopeFilter:
        """Narrows a scope so users and agents only see their own tours."""
        values = scope.model_dump() if scope is not None else {}
        if actor.role == models.ActorRole.USER:
            values["user_id"] = actor.id
        elif actor.role == models.ActorRole.AGENT:
            values["agent_id"] = actor.id
        elif scope is None:
            raise ValidationError("Admins must choose an agent, user, property or tour to watch.")
        return schemas.ScopeFilter(**values)

    # --- Live updates ---

    def subscribe_to_changes(self, actor: schemas.Actor, scope: Optional[schemas.ScopeFilter] = None,
                             subscriber_id: Optional[str] = None) -> Subscription:
        return self.hub.subscribe(self.restrict_scope(actor, scope), subscriber_id=subscriber_id)

    def unsubscribe(self, subscription: Subscription) -> None:
        self.hub.unsubscribe(subscription)

    # --- Housekeeping ---

    def expire_stale_requests(self, now: Optional[datetime.datetime] = None) -> int:
        """Cancels pending and reschedule-requested tours whose start has passed."""
        now = now or self.clock()
        expired = 0
        system = schemas.Actor(id=0, role=models.ActorRole.ADMIN)
        for booking in crud.get_expired_requests(self.db, now):
            try:
                self.cancel_tour(booking.id, system, EXPIRY_REASON)
                expired += 1
            except TourServiceError as e:
                # Someone acted on it in the meantime; the next sweep will see the new state
                logger.warning(f"Could not expire tour {booking.id}: {e.message}")
        return expired
