import datetime
import logging
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session
from typing import List, Annotated, Optional
from jose import jwt, JWTError
from fastapi.security import APIKeyHeader

from .. import schemas, models
from ..database import get_db
from ..config import settings
from ..notifications import hub
from ..service import SchedulingService

from fastapi_limiter.depends import RateLimiter

logger = logging.getLogger("tour_service")

router = APIRouter(prefix="/tours", tags=["Tours"])

api_key_header = APIKeyHeader(name="Authorization")


async def get_key_by_user_id_or_ip(request: Request) -> str:
    """
    Tries to get the user ID from the JWT token.
    If it fails (no token, invalid token), it falls back to the client's IP.
    """
    try:
        token = request.headers.get("Authorization")
        scheme, jwt_token = token.split()
        if scheme.lower() != "bearer":
            return request.client.host  # Fallback to IP

        payload = jwt.decode(jwt_token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        user_id = payload.get("sub")

        if user_id:
            return str(user_id)
    except (JWTError, ValueError, AttributeError, TypeError):
        # If token is invalid, missing, or malformed, limit by IP
        pass
    return request.client.host


async def get_current_actor(
        token: Annotated[str, Depends(api_key_header)]
) -> schemas.Actor:
    """
    Decodes the JWT from the 'Authorization: Bearer ...' header to get the
    caller's id and role. The token is issued by the identity service.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        scheme, jwt_token = token.split()
        if scheme.lower() != "bearer":
            raise credentials_exception
        payload = jwt.decode(jwt_token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        user_id = int(payload.get("sub"))
        role = models.ActorRole(payload.get("role", models.ActorRole.USER.value))
        return schemas.Actor(id=user_id, role=role)
    except (JWTError, ValueError, AttributeError, TypeError):
        raise credentials_exception


def get_scheduling_service(db: Session = Depends(get_db)) -> SchedulingService:
    return SchedulingService(db)


def get_expected_version(if_match: Annotated[Optional[str], Header()] = None) -> Optional[int]:
    """Reads the booking version the client last saw from the If-Match header."""
    if if_match is None:
        return None
    try:
        return int(if_match.strip().strip('"'))
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="If-Match must be the tour version number."
        )


request_rate_limiter = RateLimiter(
    times=settings.REQUEST_RATE_LIMIT_PER_MINUTE, minutes=1, identifier=get_key_by_user_id_or_ip
)

Actor = Annotated[schemas.Actor, Depends(get_current_actor)]
Service = Annotated[SchedulingService, Depends(get_scheduling_service)]
ExpectedVersion = Annotated[Optional[int], Depends(get_expected_version)]


@router.get("/slots", response_model=List[schemas.AvailabilitySlot])
def read_available_slots(
        actor: Actor,
        service: Service,
        agent_id: int,
        property_id: int,
        start: datetime.datetime,
        end: datetime.datetime,
        duration_minutes: int = 60,
):
    """
    List the bookable time slots for an agent and property.
    """
    return service.get_available_slots(
        agent_id, property_id, schemas.to_local_naive(start), schemas.to_local_naive(end), duration_minutes
    )


@router.post("/", response_model=schemas.TourBookingRead, status_code=status.HTTP_201_CREATED)
def request_tour(
        tour: schemas.TourRequest,
        actor: Actor,
        service: Service,
        limit: None = Depends(request_rate_limiter)
):
    """
    Request a tour for the authenticated user.
    """
    return service.request_tour(
        property_id=tour.property_id,
        agent_id=tour.agent_id,
        requester=actor,
        start=tour.start,
        duration_minutes=tour.duration_minutes,
        is_virtual=tour.is_virtual,
        notes=tour.notes,
        participants=tour.participants,
    )


@router.get("/", response_model=List[schemas.TourBookingRead])
def read_tours(
        actor: Actor,
        service: Service,
        agent_id: Optional[int] = None,
        user_id: Optional[int] = None,
        property_id: Optional[int] = None,
        start: Optional[datetime.datetime] = None,
        end: Optional[datetime.datetime] = None,
        tour_status: Annotated[Optional[List[models.TourStatus]], Query(alias="status")] = None,
        skip: int = 0,
        limit: int = 100,
):
    """
    Get the tours visible to the caller. Users see the tours they requested,
    agents the tours assigned to them.
    """
    scope = None
    if any(v is not None for v in (agent_id, user_id, property_id)):
        scope = schemas.ScopeFilter(agent_id=agent_id, user_id=user_id, property_id=property_id)
    return service.list_tours(
        actor, scope,
        start=schemas.to_local_naive(start) if start else None,
        end=schemas.to_local_naive(end) if end else None,
        statuses=tour_status, skip=skip, limit=limit,
    )


@router.post("/blocked-times", response_model=schemas.BlockedTimeRead, status_code=status.HTTP_201_CREATED)
def block_agent_time(
        blocked: schemas.BlockedTimeCreate,
        actor: Actor,
        service: Service,
        agent_id: Optional[int] = None,
):
    """
    Block time on an agent's calendar. Agents block their own time; admins
    pass the agent_id.
    """
    return service.block_time(actor, agent_id if agent_id is not None else actor.id, blocked)


@router.get("/agents/{agent_id}/working-hours", response_model=List[schemas.WorkingDayRead])
def read_working_hours(agent_id: int, actor: Actor, service: Service):
    # An empty list means the agent is on the default week
    return service.get_working_hours(agent_id)


@router.put("/agents/{agent_id}/working-hours", response_model=List[schemas.WorkingDayRead])
def set_working_hours(agent_id: int, week: schemas.WeeklyHoursUpdate, actor: Actor, service: Service):
    return service.set_working_hours(actor, agent_id, week)


async def stream_events(request: Request, scope: schemas.ScopeFilter, subscriber_id: str,
                        heartbeat_seconds: float):
    """
    Yields one JSON line per event, plus a heartbeat line while idle.

    Subscribes only once the body starts streaming and unsubscribes when the
    client goes away.
    """
    subscription = hub.subscribe(scope, subscriber_id=subscriber_id)
    try:
        yield f'{{"type": "connected", "subscription_id": "{subscription.id}"}}\n'
        while True:
            if await request.is_disconnected():
                logger.info(f"Subscriber {subscription.subscriber_id} disconnected")
                break
            try:
                event = await subscription.get(timeout=heartbeat_seconds)
            except StopAsyncIteration:
                break
            if event is None:
                yield '{"type": "heartbeat"}\n'
                continue
            yield event.model_dump_json() + "\n"
    finally:
        hub.unsubscribe(subscription)


@router.get("/events")
async def stream_tour_changes(
        request: Request,
        actor: Actor,
        agent_id: Optional[int] = None,
        user_id: Optional[int] = None,
        property_id: Optional[int] = None,
        booking_id: Optional[int] = None,
):
    """
    Live stream of tour changes for a scope (application/x-ndjson).

    There is no replay: after reconnecting, reload the tours with GET /tours/.
    """
    scope = None
    if any(v is not None for v in (agent_id, user_id, property_id, booking_id)):
        scope = schemas.ScopeFilter(agent_id=agent_id, user_id=user_id, property_id=property_id,
                                    booking_id=booking_id)
    # The stream holds no database session
    restricted = SchedulingService.restrict_scope(actor, scope)

    return StreamingResponse(
        stream_events(request, restricted, f"{actor.role.value}:{actor.id}",
                      settings.SUBSCRIPTION_HEARTBEAT_SECONDS),
        media_type="application/x-ndjson",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no"
        }
    )


@router.get("/{booking_id}", response_model=schemas.TourBookingRead)
def read_tour(booking_id: int, actor: Actor, service: Service):
    return service.get_tour(booking_id, actor)


@router.post("/{booking_id}/confirm", response_model=schemas.TourBookingRead)
def confirm_tour(booking_id: int, body: schemas.ConfirmRequest, actor: Actor, service: Service,
                 expected_version: ExpectedVersion):
    return service.confirm_tour(booking_id, actor, new_time=body.new_time, expected_version=expected_version)


@router.post("/{booking_id}/reschedule", response_model=schemas.TourBookingRead)
def request_reschedule(booking_id: int, body: schemas.RescheduleRequest, actor: Actor, service: Service,
                       expected_version: ExpectedVersion):
    return service.request_reschedule(booking_id, actor, reason=body.reason, new_time=body.new_time,
                                      expected_version=expected_version)


@router.post("/{booking_id}/cancel", response_model=schemas.TourBookingRead)
def cancel_tour(booking_id: int, body: schemas.CancelRequest, actor: Actor, service: Service,
                expected_version: ExpectedVersion):
    return service.cancel_tour(booking_id, actor, reason=body.reason, expected_version=expected_version)


@router.post("/{booking_id}/complete", response_model=schemas.TourBookingRead)
def complete_tour(booking_id: int, body: schemas.CompleteRequest, actor: Actor, service: Service,
                  expected_version: ExpectedVersion):
    return service.complete_tour(booking_id, actor, notes=body.notes, expected_version=expected_version)


@router.post("/{booking_id}/no-show", response_model=schemas.TourBookingRead)
def mark_no_show(booking_id: int, body: schemas.NoShowRequest, actor: Actor, service: Service,
                 expected_version: ExpectedVersion):
    return service.mark_no_show(booking_id, actor, notes=body.notes, expected_version=expected_version)


@router.post("/{booking_id}/participants", response_model=schemas.TourBookingRead)
def add_participant(booking_id: int, participant: schemas.ParticipantCreate, actor: Actor, service: Service,
                    expected_version: ExpectedVersion):
    return service.add_participant(booking_id, actor, participant, expected_version=expected_version)


@router.delete("/{booking_id}/participants/{index}", response_model=schemas.TourBookingRead)
def remove_participant(booking_id: int, index: int, actor: Actor, service: Service,
                       expected_version: ExpectedVersion):
    return service.remove_participant(booking_id, actor, index, expected_version=expected_version)
