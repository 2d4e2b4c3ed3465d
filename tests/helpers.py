"""Shared constants and builders for the tour service tests."""
import datetime

from jose import jwt

from tour_service import models, schemas
from tour_service.config import settings

# A Monday far enough ahead that nothing is "in the past"
TOUR_DAY = datetime.date(2030, 1, 7)
FIXED_NOW = datetime.datetime(2030, 1, 7, 7, 0)

AGENT_ID = 10
OTHER_AGENT_ID = 11
PROPERTY_ID = 100
OTHER_PROPERTY_ID = 101
REQUESTER_ID = 1
OTHER_REQUESTER_ID = 2
ADMIN_ID = 999


def at(hour: int, minute: int = 0, day: datetime.date = TOUR_DAY) -> datetime.datetime:
    return datetime.datetime.combine(day, datetime.time(hour, minute))


def requester(user_id: int = REQUESTER_ID) -> schemas.Actor:
    return schemas.Actor(id=user_id, role=models.ActorRole.USER)


def agent(agent_id: int = AGENT_ID) -> schemas.Actor:
    return schemas.Actor(id=agent_id, role=models.ActorRole.AGENT)


def admin() -> schemas.Actor:
    return schemas.Actor(id=ADMIN_ID, role=models.ActorRole.ADMIN)


def create_test_token(user_id: int = REQUESTER_ID, role: str = "user") -> str:
    """Creates a simple JWT for testing."""
    payload = {"sub": str(user_id), "role": role}
    token = jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
    return f"Bearer {token}"


def make_event(booking_id: int = 1, agent_id: int = AGENT_ID, status: models.TourStatus = models.TourStatus.PENDING,
               version: int = 1) -> schemas.BookingEvent:
    """A booking event as the store would publish it, without touching the database."""
    booking = schemas.TourBookingRead(
        id=booking_id, property_id=PROPERTY_ID, agent_id=agent_id, requester_id=REQUESTER_ID,
        start=at(10), end=at(11), status=status, is_virtual=False, version=version,
        created_at=FIXED_NOW, updated_at=FIXED_NOW,
    )
    return schemas.BookingEvent(
        type="tour.requested", booking_id=booking_id, agent_id=agent_id, property_id=PROPERTY_ID,
        requester_id=REQUESTER_ID, status=status, version=version, booking=booking,
    )
