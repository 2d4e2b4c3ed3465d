import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from aiokafka.errors import KafkaConnectionError

from tour_service import crud, models, outbox_poller, schemas, tour_scheduler
from tour_service.config import settings

from helpers import AGENT_ID, PROPERTY_ID, REQUESTER_ID, at


def create_tours(db_session, count):
    for n in range(count):
        crud.create_booking(db_session, schemas.TourDraft(
            property_id=PROPERTY_ID, agent_id=AGENT_ID, requester_id=REQUESTER_ID,
            start=at(9 + n), end=at(10 + n),
        ))


@pytest.mark.asyncio
async def test_relay_sends_events_oldest_first_and_deletes_them(db_session):
    create_tours(db_session, 3)
    producer = AsyncMock()

    sent = await outbox_poller.relay_pending_events(db_session, producer)

    assert sent == 3
    assert db_session.query(models.OutboxEvent).count() == 0
    topics = [call.kwargs["topic"] for call in producer.send_and_wait.call_args_list]
    assert topics == [settings.KAFKA_TOUR_TOPIC] * 3
    starts = [json.loads(call.kwargs["value"])["booking"]["start"] for call in producer.send_and_wait.call_args_list]
    assert starts == sorted(starts)


@pytest.mark.asyncio
async def test_relay_stops_at_first_failure(db_session):
    create_tours(db_session, 3)
    producer = AsyncMock()
    producer.send_and_wait.side_effect = [None, KafkaConnectionError("broker went away"), None]

    sent = await outbox_poller.relay_pending_events(db_session, producer)

    assert sent == 1
    assert producer.send_and_wait.await_count == 2
    assert db_session.query(models.OutboxEvent).count() == 2


@pytest.mark.asyncio
async def test_relay_with_empty_outbox(db_session):
    producer = AsyncMock()
    assert await outbox_poller.relay_pending_events(db_session, producer) == 0
    producer.send_and_wait.assert_not_awaited()


@pytest.mark.asyncio
async def test_connect_producer_gives_up(mocker):
    producer = MagicMock()
    producer.start = AsyncMock(side_effect=KafkaConnectionError("no brokers"))
    producer.stop = AsyncMock()
    mocker.patch("tour_service.outbox_poller.AIOKafkaProducer", return_value=producer)
    sleep = mocker.patch("tour_service.outbox_poller.asyncio.sleep", new_callable=AsyncMock)

    result = await outbox_poller.connect_producer(retry_delay=0, max_retries=2)

    assert result is None
    assert producer.start.await_count == 2
    assert producer.stop.await_count == 2
    sleep.assert_awaited_once_with(0)


@pytest.mark.asyncio
async def test_connect_producer_retries_until_kafka_answers(mocker):
    producer = MagicMock()
    producer.start = AsyncMock(side_effect=[KafkaConnectionError("not yet"), None])
    producer.stop = AsyncMock()
    mocker.patch("tour_service.outbox_poller.AIOKafkaProducer", return_value=producer)
    sleep = mocker.patch("tour_service.outbox_poller.asyncio.sleep", new_callable=AsyncMock)

    result = await outbox_poller.connect_producer(retry_delay=3, max_retries=5)

    assert result is producer
    assert producer.start.await_count == 2
    producer.stop.assert_awaited_once()
    sleep.assert_awaited_once_with(3)


def test_scheduler_expires_through_the_service(db_session, mocker):
    expire = mocker.patch("tour_service.tour_scheduler.SchedulingService.expire_stale_requests", return_value=2)

    assert tour_scheduler.expire_stale_requests(db_session) == 2
    expire.assert_called_once()
