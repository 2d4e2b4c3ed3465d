from enum import Enum as PyEnum

from sqlalchemy import (
    Column, Integer, String, Text, Boolean, DateTime, Time, TIMESTAMP, ForeignKey, Index, CheckConstraint,
    UniqueConstraint
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import relationship
from .database import Base
import datetime


class ActorRole(str, PyEnum):
    USER = "user"
    AGENT = "agent"
    ADMIN = "admin"


class TourStatus(str, PyEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    RESCHEDULE_REQUESTED = "reschedule_requested"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    NO_SHOW = "no_show"


# Statuses whose interval blocks the agent's calendar.
# A reschedule request keeps its original slot until it is resolved.
HOLDING_STATUSES = (TourStatus.PENDING, TourStatus.CONFIRMED, TourStatus.RESCHEDULE_REQUESTED)

TERMINAL_STATUSES = (TourStatus.CANCELLED, TourStatus.COMPLETED, TourStatus.NO_SHOW)

# Participants may only change while the tour is still going ahead
PARTICIPANT_EDITABLE_STATUSES = (TourStatus.PENDING, TourStatus.CONFIRMED)


class TourBooking(Base):
    __tablename__ = "tour_bookings"

    id = Column(Integer, primary_key=True, index=True)

    # These are just IDs from other services.
    # No direct DB relationship is enforced.
    property_id = Column(Integer, index=True, nullable=False)
    agent_id = Column(Integer, index=True, nullable=False)
    requester_id = Column(Integer, index=True, nullable=False)

    start = Column(DateTime, nullable=False)
    end = Column(DateTime, nullable=False)

    status = Column(
        SQLEnum(TourStatus, values_callable=lambda e: [m.value for m in e]),
        default=TourStatus.PENDING,
        nullable=False,
    )

    is_virtual = Column(Boolean, default=False, nullable=False)
    meeting_link = Column(String(512), nullable=True)

    # Append-only; one "[action by role] text" entry per line
    notes = Column(Text, nullable=True)

    # Time suggested by a reschedule request, applied on confirm
    proposed_start = Column(DateTime, nullable=True)
    proposed_end = Column(DateTime, nullable=True)

    last_action_by = Column(Integer, nullable=True)
    last_action_type = Column(String(40), nullable=True)

    version = Column(Integer, nullable=False)

    created_at = Column(TIMESTAMP, default=datetime.datetime.utcnow)
    updated_at = Column(TIMESTAMP, default=datetime.datetime.utcnow, onupdate=datetime.datetime.utcnow)
    confirmed_at = Column(TIMESTAMP, nullable=True)
    cancelled_at = Column(TIMESTAMP, nullable=True)
    completed_at = Column(TIMESTAMP, nullable=True)

    participants = relationship(
        "TourParticipant",
        back_populates="booking",
        order_by="TourParticipant.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    # Every UPDATE is issued as "... WHERE version = <loaded version>" and
    # raises StaleDataError when no row matched.
    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint('"end" > start', name="check_tour_interval_positive"),
        Index("ix_tour_bookings_agent_interval", "agent_id", "start", "end"),
    )

    def __repr__(self) -> str:
        return f"<TourBooking(id={self.id}, agent={self.agent_id}, status={self.status}, v={self.version})>"


class TourParticipant(Base):
    __tablename__ = "tour_participants"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, ForeignKey("tour_bookings.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False)

    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)
    phone = Column(String(64), nullable=True)
    relationship_to_requester = Column("relationship", String(64), nullable=True)

    created_at = Column(TIMESTAMP, default=datetime.datetime.utcnow)

    booking = relationship("TourBooking", back_populates="participants")


class AgentBlockedTime(Base):
    __tablename__ = "agent_blocked_times"

    id = Column(Integer, primary_key=True, index=True)
    agent_id = Column(Integer, index=True, nullable=False)

    start = Column(DateTime, nullable=False)
    end = Column(DateTime, nullable=False)
    reason = Column(Text, nullable=True)

    created_by = Column(Integer, nullable=True)
    created_at = Column(TIMESTAMP, default=datetime.datetime.utcnow)


class AgentWorkingHours(Base):
    """One row per weekday the agent has set up. Days without an active row are closed."""
    __tablename__ = "agent_working_hours"

    id = Column(Integer, primary_key=True, index=True)
    agent_id = Column(Integer, index=True, nullable=False)

    # 0 = Monday .. 6 = Sunday, as date.weekday()
    day_of_week = Column(Integer, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(TIMESTAMP, default=datetime.datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("agent_id", "day_of_week", name="uq_agent_working_hours_day"),
        CheckConstraint("end_time > start_time", name="check_working_hours_positive"),
        CheckConstraint("day_of_week BETWEEN 0 AND 6", name="check_working_hours_weekday"),
    )


class OutboxEvent(Base):
    __tablename__ = "outbox_events"

    id = Column(Integer, primary_key=True, index=True)

    # Status to track if the event has been sent
    status = Column(String(20), default="PENDING", nullable=False)

    # The Kafka topic to send the message to
    topic = Column(String(255), nullable=False)

    # The full JSON payload to be sent
    payload = Column(Text, nullable=False)

    created_at = Column(TIMESTAMP, default=datetime.datetime.utcnow)

    # An index on 'status' will make the poller's query much faster
    __table_args__ = (
        Index('ix_outbox_events_status', 'status'),
    )
