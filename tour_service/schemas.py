from pydantic import AfterValidator, AliasChoices, BaseModel, ConfigDict, Field, model_validator
from typing import Annotated, List, Optional
import datetime
import uuid

from .models import ActorRole, TourStatus


def to_local_naive(value: datetime.datetime) -> datetime.datetime:
    """Tours are scheduled in a single timezone; stored times are naive local times."""
    if value.tzinfo is not None:
        return value.astimezone().replace(tzinfo=None)
    return value


LocalDatetime = Annotated[datetime.datetime, AfterValidator(to_local_naive)]


class Actor(BaseModel):
    """Already-authenticated caller, as supplied by the identity layer."""
    model_config = ConfigDict(frozen=True)

    id: int
    role: ActorRole


class TimeWindow(BaseModel):
    start: LocalDatetime
    end: LocalDatetime

    @model_validator(mode="after")
    def check_order(self):
        if self.end <= self.start:
            raise ValueError("end must be after start")
        return self


class AvailabilitySlot(BaseModel):
    model_config = ConfigDict(frozen=True)

    start: datetime.datetime
    end: datetime.datetime


class ParticipantBase(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    email: Optional[str] = None
    phone: Optional[str] = None
    relationship: Optional[str] = None


class ParticipantCreate(ParticipantBase):
    pass


class ParticipantRead(ParticipantBase):
    model_config = ConfigDict(from_attributes=True)

    relationship: Optional[str] = Field(default=None, validation_alias=AliasChoices("relationship_to_requester", "relationship"))


class TourRequest(BaseModel):
    property_id: int
    agent_id: int
    start: LocalDatetime
    duration_minutes: int = 60
    is_virtual: bool = False
    notes: Optional[str] = None
    participants: List[ParticipantCreate] = []


class TourDraft(BaseModel):
    """A validated request with its end time resolved, ready to be stored."""
    property_id: int
    agent_id: int
    requester_id: int
    start: datetime.datetime
    end: datetime.datetime
    is_virtual: bool = False
    notes: Optional[str] = None
    participants: List[ParticipantCreate] = []


class ConfirmRequest(BaseModel):
    new_time: Optional[TimeWindow] = None


class RescheduleRequest(BaseModel):
    reason: str
    new_time: Optional[TimeWindow] = None


class CancelRequest(BaseModel):
    reason: str


class CompleteRequest(BaseModel):
    notes: str


class NoShowRequest(BaseModel):
    notes: Optional[str] = None


class BlockedTimeCreate(BaseModel):
    start: LocalDatetime
    end: LocalDatetime
    reason: Optional[str] = None

    @model_validator(mode="after")
    def check_order(self):
        if self.end <= self.start:
            raise ValueError("end must be after start")
        return self


class BlockedTimeRead(BlockedTimeCreate):
    model_config = ConfigDict(from_attributes=True)

    id: int
    agent_id: int
    created_at: datetime.datetime


class WorkingDay(BaseModel):
    day_of_week: int = Field(ge=0, le=6, description="0 = Monday .. 6 = Sunday")
    start_time: datetime.time
    end_time: datetime.time
    is_active: bool = True

    @model_validator(mode="after")
    def check_order(self):
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class WorkingDayRead(WorkingDay):
    model_config = ConfigDict(from_attributes=True)

    agent_id: int


class WeeklyHoursUpdate(BaseModel):
    """Replaces the agent's whole week. Weekdays that are left out are closed;
    an empty list puts the agent back on the default week.
    """
    days: List[WorkingDay]

    @model_validator(mode="after")
    def check_unique_days(self):
        weekdays = [d.day_of_week for d in self.days]
        if len(weekdays) != len(set(weekdays)):
            raise ValueError("each day_of_week may appear only once")
        return self


class TourBookingRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    property_id: int
    agent_id: int
    requester_id: int
    start: datetime.datetime
    end: datetime.datetime
    status: TourStatus
    is_virtual: bool
    meeting_link: Optional[str] = None
    notes: Optional[str] = None
    participants: List[ParticipantRead] = []
    proposed_start: Optional[datetime.datetime] = None
    proposed_end: Optional[datetime.datetime] = None
    last_action_by: Optional[int] = None
    last_action_type: Optional[str] = None
    version: int
    created_at: datetime.datetime
    updated_at: datetime.datetime
    confirmed_at: Optional[datetime.datetime] = None
    cancelled_at: Optional[datetime.datetime] = None
    completed_at: Optional[datetime.datetime] = None


class ScopeFilter(BaseModel):
    """Selects booking events by agent, requester, property or booking.

    All given fields must match.
    """
    model_config = ConfigDict(frozen=True)

    agent_id: Optional[int] = None
    user_id: Optional[int] = None
    property_id: Optional[int] = None
    booking_id: Optional[int] = None

    @model_validator(mode="after")
    def check_not_empty(self):
        if all(v is None for v in (self.agent_id, self.user_id, self.property_id, self.booking_id)):
            raise ValueError("at least one of agent_id, user_id, property_id or booking_id is required")
        return self

    def matches(self, event: "BookingEvent") -> bool:
        if self.agent_id is not None and self.agent_id != event.agent_id:
            return False
        if self.user_id is not None and self.user_id != event.requester_id:
            return False
        if self.property_id is not None and self.property_id != event.property_id:
            return False
        if self.booking_id is not None and self.booking_id != event.booking_id:
            return False
        return True


class BookingEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    type: str
    booking_id: int
    agent_id: int
    property_id: int
    requester_id: int
    status: TourStatus
    previous_status: Optional[TourStatus] = None
    version: int
    occurred_at: datetime.datetime = Field(default_factory=datetime.datetime.utcnow)
    booking: TourBookingRead
