import datetime
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    DATABASE_URL: str
    # This service needs to know the secret to VERIFY tokens
    SECRET_KEY: str
    ALGORITHM: str

    REDIS_URL: str

    # --- KAFKA SETTINGS ---
    KAFKA_BOOTSTRAP_SERVERS: str = "kafka:9092"
    KAFKA_TOUR_TOPIC: str = "tour_updates"

    # --- SLOT ENGINE ---
    # Wall-clock times in the agent's (single) timezone
    WORKING_HOURS_START: datetime.time = datetime.time(8, 0)
    WORKING_HOURS_END: datetime.time = datetime.time(20, 0)
    # Days open for agents that have not set up their own week (0 = Monday)
    WORKING_DAYS: List[int] = [0, 1, 2, 3, 4]
    SLOT_GRANULARITY_MINUTES: int = 30
    ALLOWED_DURATIONS: List[int] = [30, 60, 90, 120]
    MAX_LOOKAHEAD_DAYS: int = 30
    SLOT_BUFFER_MINUTES: int = 0

    MEETING_LINK_BASE_URL: str = "https://meet.example.com/tours"

    # --- BOOKING STORE ---
    LOCK_TIMEOUT_SECONDS: float = 10.0
    STORE_MAX_RETRIES: int = 3
    STORE_RETRY_BACKOFF_SECONDS: float = 0.1

    # --- NOTIFICATIONS ---
    SUBSCRIPTION_QUEUE_SIZE: int = 1000
    SUBSCRIPTION_HEARTBEAT_SECONDS: float = 15.0

    # --- BACKGROUND TASKS ---
    OUTBOX_POLL_INTERVAL_SECONDS: int = 5
    EXPIRY_POLL_INTERVAL_SECONDS: int = 300

    REQUEST_RATE_LIMIT_PER_MINUTE: int = 30

    model_config = SettingsConfigDict(env_file=".env")


settings = Settings()
