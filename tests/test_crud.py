# Import necessary modules
import datetime
import json
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

# Import the functions to test and the models
from tour_service import crud, models, schemas
from tour_service.errors import InvalidTransition, NotFound, SlotConflict, Stale
from tour_service.state_machine import TourAction, TransitionPayload, decide

from helpers import AGENT_ID, OTHER_AGENT_ID, PROPERTY_ID, REQUESTER_ID, agent, at, requester


def make_draft(start=None, end=None, agent_id=AGENT_ID, **extra):
    return schemas.TourDraft(
        property_id=PROPERTY_ID,
        agent_id=agent_id,
        requester_id=REQUESTER_ID,
        start=start or at(10),
        end=end or at(11),
        **extra,
    )


def operational_error():
    return OperationalError("UPDATE tour_bookings", {}, Exception("database is locked"))


# --- check_booking_conflict with a mocked session ---

def test_check_booking_conflict_no_conflict():
    """Neither a booking nor a blocked time overlaps."""
    mock_db = MagicMock(spec=Session)
    # Both queries (bookings, then blocked times) find nothing
    mock_db.query.return_value.filter.return_value.first.return_value = None

    conflict = crud.check_booking_conflict(mock_db, AGENT_ID, at(10), at(11))

    assert conflict is False
    assert mock_db.query.return_value.filter.return_value.first.call_count == 2


def test_check_booking_conflict_existing_booking():
    """An overlapping holding booking is a conflict; blocked times are not consulted."""
    mock_db = MagicMock(spec=Session)
    existing = SimpleNamespace(id=1, agent_id=AGENT_ID, start=at(9, 30), end=at(10, 30))
    mock_db.query.return_value.filter.return_value.first.return_value = existing

    conflict = crud.check_booking_conflict(mock_db, AGENT_ID, at(10), at(11))

    assert conflict is True
    mock_db.query.return_value.filter.return_value.first.assert_called_once()


def test_check_booking_conflict_blocked_time():
    """No booking overlaps, but the agent blocked that time."""
    mock_db = MagicMock(spec=Session)
    blocked = SimpleNamespace(agent_id=AGENT_ID, start=at(8), end=at(12))
    mock_db.query.return_value.filter.return_value.first.side_effect = [None, blocked]

    assert crud.check_booking_conflict(mock_db, AGENT_ID, at(10), at(11)) is True


# --- check_booking_conflict against the test database ---

def test_touching_tours_do_not_conflict(db_session):
    crud.create_booking(db_session, make_draft(at(10), at(11)))

    assert crud.check_booking_conflict(db_session, AGENT_ID, at(11), at(12)) is False
    assert crud.check_booking_conflict(db_session, AGENT_ID, at(9), at(10)) is False
    assert crud.check_booking_conflict(db_session, AGENT_ID, at(10, 30), at(11, 30)) is True


def test_buffer_widens_existing_tours(db_session):
    crud.create_booking(db_session, make_draft(at(10), at(11)))

    assert crud.check_booking_conflict(db_session, AGENT_ID, at(11), at(12), buffer_minutes=30) is True
    assert crud.check_booking_conflict(db_session, AGENT_ID, at(8, 30), at(9, 30), buffer_minutes=30) is True
    assert crud.check_booking_conflict(db_session, AGENT_ID, at(11, 30), at(12, 30), buffer_minutes=30) is False


def test_buffer_does_not_widen_blocked_time(db_session):
    blocked = schemas.BlockedTimeCreate(start=at(12), end=at(13))
    crud.create_blocked_time(db_session, AGENT_ID, blocked, created_by=AGENT_ID)

    assert crud.check_booking_conflict(db_session, AGENT_ID, at(13), at(14), buffer_minutes=30) is False


def test_other_agents_tours_do_not_conflict(db_session):
    crud.create_booking(db_session, make_draft(at(10), at(11)))
    assert crud.check_booking_conflict(db_session, OTHER_AGENT_ID, at(10), at(11)) is False


def test_booking_can_be_excluded_from_its_own_check(db_session):
    booking = crud.create_booking(db_session, make_draft(at(10), at(11))).booking
    assert crud.check_booking_conflict(db_session, AGENT_ID, at(10), at(11),
                                       exclude_booking_id=booking.id) is False


def test_cancelled_tour_frees_the_slot(db_session):
    booking = crud.create_booking(db_session, make_draft()).booking
    decision = decide(booking, TourAction.CANCEL, requester(), TransitionPayload(reason="no longer needed"))
    crud.apply_transition(db_session, booking.id, decision, booking.version)

    assert crud.check_booking_conflict(db_session, AGENT_ID, at(10), at(11)) is False


# --- create_booking ---

def test_create_booking_writes_tour_and_outbox_event(db_session):
    participants = [schemas.ParticipantCreate(name="Sam", relationship="partner")]
    committed = crud.create_booking(db_session, make_draft(participants=participants, notes="gate code 1234"))
    booking = committed.booking

    assert booking.id is not None
    assert booking.status == models.TourStatus.PENDING
    assert booking.version == 1
    assert booking.notes == "[request by user] gate code 1234"
    assert booking.participants[0].relationship_to_requester == "partner"
    assert committed.event.type == "tour.requested"
    assert committed.event.previous_status is None

    outbox = db_session.query(models.OutboxEvent).all()
    assert len(outbox) == 1
    payload = json.loads(outbox[0].payload)
    assert payload["type"] == "tour.requested"
    assert payload["booking_id"] == booking.id


def test_create_booking_conflict_writes_nothing(db_session):
    crud.create_booking(db_session, make_draft(at(10), at(11)))

    with pytest.raises(SlotConflict):
        crud.create_booking(db_session, make_draft(at(10, 30), at(11, 30)))

    assert db_session.query(models.TourBooking).count() == 1
    assert db_session.query(models.OutboxEvent).count() == 1


def test_create_booking_respects_blocked_time(db_session):
    crud.create_blocked_time(db_session, AGENT_ID, schemas.BlockedTimeCreate(start=at(9), end=at(12)),
                             created_by=AGENT_ID)
    with pytest.raises(SlotConflict):
        crud.create_booking(db_session, make_draft(at(10), at(11)))


def test_publish_failure_does_not_undo_the_commit(db_session):
    def broken_publisher(event):
        raise RuntimeError("hub is down")

    committed = crud.create_booking(db_session, make_draft(), on_commit=broken_publisher)

    assert db_session.query(models.TourBooking).filter_by(id=committed.booking.id).count() == 1


# --- apply_transition ---

def test_apply_transition_bumps_version_and_records_actor(db_session):
    booking = crud.create_booking(db_session, make_draft()).booking
    decision = decide(booking, TourAction.CONFIRM, agent())

    committed = crud.apply_transition(db_session, booking.id, decision, expected_version=1)

    assert committed.booking.status == models.TourStatus.CONFIRMED
    assert committed.booking.version == 2
    assert committed.booking.last_action_by == AGENT_ID
    assert committed.booking.last_action_type == "confirm"
    assert committed.booking.confirmed_at is not None
    assert committed.event.previous_status == models.TourStatus.PENDING


def test_apply_transition_with_old_version_is_stale(db_session):
    booking = crud.create_booking(db_session, make_draft()).booking
    decision = decide(booking, TourAction.CONFIRM, agent())

    with pytest.raises(Stale):
        crud.apply_transition(db_session, booking.id, decision, expected_version=7)

    assert crud.get_booking(db_session, booking.id).status == models.TourStatus.PENDING


def test_apply_transition_after_status_moved_on_is_stale(db_session):
    booking = crud.create_booking(db_session, make_draft()).booking
    confirm = decide(booking, TourAction.CONFIRM, agent())
    cancel = decide(booking, TourAction.CANCEL, requester(), TransitionPayload(reason="found another place"))

    crud.apply_transition(db_session, booking.id, cancel)
    with pytest.raises(Stale):
        crud.apply_transition(db_session, booking.id, confirm)

    assert crud.get_booking(db_session, booking.id).status == models.TourStatus.CANCELLED


def test_apply_transition_to_taken_time_conflicts(db_session):
    crud.create_booking(db_session, make_draft(at(14), at(15)))
    booking = crud.create_booking(db_session, make_draft(at(10), at(11))).booking
    decision = decide(booking, TourAction.CONFIRM, agent(),
                      TransitionPayload(new_time=schemas.TimeWindow(start=at(14, 30), end=at(15, 30))))

    with pytest.raises(SlotConflict):
        crud.apply_transition(db_session, booking.id, decision)

    reloaded = crud.get_booking(db_session, booking.id)
    assert (reloaded.start, reloaded.status) == (at(10), models.TourStatus.PENDING)


def test_apply_transition_unknown_booking(db_session):
    booking = SimpleNamespace(status=models.TourStatus.PENDING, requester_id=REQUESTER_ID, agent_id=AGENT_ID,
                              start=at(10), end=at(11), is_virtual=False, meeting_link=None,
                              proposed_start=None, proposed_end=None)
    decision = decide(booking, TourAction.CONFIRM, agent())
    with pytest.raises(NotFound):
        crud.apply_transition(db_session, 12345, decision)


# --- Participants ---

def test_participants_are_renumbered_on_removal(db_session):
    participants = [schemas.ParticipantCreate(name=name) for name in ("Ana", "Ben", "Cy")]
    booking = crud.create_booking(db_session, make_draft(participants=participants)).booking

    committed = crud.remove_participant(db_session, booking.id, 1, requester())

    assert [(p.position, p.name) for p in committed.booking.participants] == [(0, "Ana"), (1, "Cy")]
    assert committed.event.type == "tour.updated"


def test_remove_missing_participant(db_session):
    booking = crud.create_booking(db_session, make_draft()).booking
    with pytest.raises(NotFound):
        crud.remove_participant(db_session, booking.id, 0, requester())


def test_participants_are_frozen_after_cancel(db_session):
    booking = crud.create_booking(db_session, make_draft()).booking
    decision = decide(booking, TourAction.CANCEL, requester(), TransitionPayload(reason="sold"))
    crud.apply_transition(db_session, booking.id, decision)

    with pytest.raises(InvalidTransition):
        crud.add_participant(db_session, booking.id, schemas.ParticipantCreate(name="Dee"), requester())


# --- Working hours ---

def working_day(weekday, start=9, end=17, is_active=True):
    return schemas.WorkingDay(day_of_week=weekday, start_time=datetime.time(start),
                              end_time=datetime.time(end), is_active=is_active)


def test_replace_working_hours_swaps_the_whole_week(db_session):
    crud.replace_agent_working_hours(db_session, AGENT_ID, [working_day(d) for d in (4, 0, 2)])
    crud.replace_agent_working_hours(db_session, OTHER_AGENT_ID, [working_day(6)])

    rows = crud.replace_agent_working_hours(db_session, AGENT_ID, [working_day(1, 10, 12), working_day(3, is_active=False)])

    assert [(r.day_of_week, r.start_time, r.is_active) for r in rows] == [
        (1, datetime.time(10), True), (3, datetime.time(9), False)
    ]
    assert [r.day_of_week for r in crud.get_agent_working_hours(db_session, OTHER_AGENT_ID)] == [6]


def test_clearing_working_hours_leaves_no_rows(db_session):
    crud.replace_agent_working_hours(db_session, AGENT_ID, [working_day(0)])
    assert crud.replace_agent_working_hours(db_session, AGENT_ID, []) == []


# --- run_in_transaction ---

def test_run_in_transaction_retries_operational_errors(mocker):
    mock_db = MagicMock(spec=Session)
    sleep = mocker.patch("tour_service.crud.time.sleep")
    work = MagicMock(side_effect=[operational_error(), "done"])

    assert crud.run_in_transaction(mock_db, work, "test") == "done"

    assert work.call_count == 2
    mock_db.rollback.assert_called_once()
    mock_db.commit.assert_called_once()
    sleep.assert_called_once()


def test_run_in_transaction_gives_up_after_max_retries(mocker):
    mock_db = MagicMock(spec=Session)
    mocker.patch("tour_service.crud.time.sleep")
    mocker.patch.object(crud.settings, "STORE_MAX_RETRIES", 2)
    work = MagicMock(side_effect=operational_error())

    with pytest.raises(OperationalError):
        crud.run_in_transaction(mock_db, work, "test")

    assert work.call_count == 2
    assert mock_db.rollback.call_count == 2


def test_run_in_transaction_maps_stale_data(mocker):
    mock_db = MagicMock(spec=Session)
    work = MagicMock(side_effect=StaleDataError("version mismatch"))

    with pytest.raises(Stale):
        crud.run_in_transaction(mock_db, work, "test")

    mock_db.rollback.assert_called_once()
    mock_db.commit.assert_not_called()


def test_run_in_transaction_rolls_back_business_errors():
    mock_db = MagicMock(spec=Session)
    work = MagicMock(side_effect=SlotConflict("taken"))

    with pytest.raises(SlotConflict):
        crud.run_in_transaction(mock_db, work, "test")

    mock_db.rollback.assert_called_once()
