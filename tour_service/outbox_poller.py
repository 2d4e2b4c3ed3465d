import asyncio
import logging
from aiokafka import AIOKafkaProducer
from aiokafka.errors import KafkaConnectionError
from sqlalchemy.orm import Session
from sqlalchemy.sql import select

from .database import SessionLocal
from .models import OutboxEvent
from .config import settings

logger = logging.getLogger("outbox_poller")


async def connect_producer(retry_delay: int = 5, max_retries: int = 5) -> AIOKafkaProducer | None:
    """
    Starts a Kafka producer, retrying the initial connection.

    Returns None if Kafka stays unreachable; events then wait in the outbox
    until the service restarts.
    """
    for attempt in range(1, max_retries + 1):
        producer = AIOKafkaProducer(bootstrap_servers=settings.KAFKA_BOOTSTRAP_SERVERS)
        try:
            await producer.start()
        except KafkaConnectionError as e:
            await producer.stop()
            if attempt == max_retries:
                logger.error(f"Outbox poller could not reach Kafka after {max_retries} attempts: {e}")
                return None
            logger.warning(
                f"Kafka connection attempt {attempt}/{max_retries} failed: {e}. Retrying in {retry_delay} seconds...")
            await asyncio.sleep(retry_delay)
        else:
            logger.info(f"Outbox poller connected to Kafka on attempt {attempt}.")
            return producer
    return None


async def relay_pending_events(db: Session, producer: AIOKafkaProducer, batch_size: int = 100) -> int:
    """
    Sends one batch of pending outbox events to Kafka, oldest first.

    Sent events are deleted; failed ones stay PENDING and are retried on the
    next poll. Returns the number of events sent.
    """
    stmt = select(OutboxEvent).where(
        OutboxEvent.status == "PENDING"
    ).order_by(OutboxEvent.id).limit(batch_size).with_for_update()

    pending_events = db.execute(stmt).scalars().all()
    if not pending_events:
        return 0

    logger.info(f"Found {len(pending_events)} pending events in outbox.")
    events_processed = 0
    for event in pending_events:
        try:
            await producer.send_and_wait(
                topic=event.topic,
                value=event.payload.encode("utf-8")
            )
            db.delete(event)
            events_processed += 1
        except Exception as e:
            logger.error(f"Failed to send event {event.id} to Kafka: {e}")
            # Stop here so later events for the same tour are not sent ahead of this one
            break

    if events_processed > 0:
        db.commit()
        logger.info(f"Successfully processed {events_processed} events.")
    return events_processed


async def run_outbox_poller(poll_interval: int | None = None, retry_delay: int = 5, max_retries: int = 5):
    """
    Continuously polls the OutboxEvent table and sends pending tour events to
    Kafka for consumers outside this service.
    """
    logger.info("Starting outbox poller...")
    poll_interval = poll_interval or settings.OUTBOX_POLL_INTERVAL_SECONDS

    producer = await connect_producer(retry_delay=retry_delay, max_retries=max_retries)
    # If producer is still None after retries, exit
    if producer is None:
        return

    # --- Main polling loop (starts only if connection succeeded) ---
    try:
        while True:
            db: Session = SessionLocal()
            try:
                await relay_pending_events(db, producer)
            except Exception as e:
                logger.error(f"Error in poller loop: {e}")
                db.rollback()
            finally:
                db.close()

            await asyncio.sleep(poll_interval)

    except asyncio.CancelledError:
        logger.info("Outbox poller task cancelled.")
    finally:
        logger.info("Stopping Kafka producer...")
        await producer.stop()
        logger.info("Outbox poller shut down.")
