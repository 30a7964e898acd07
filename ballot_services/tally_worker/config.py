"""
Configuration module for the tally worker.
"""
import os
from dotenv import load_dotenv

from ..shared import RABBITMQ_CONFIG, get_queue_name

load_dotenv()


class Config:
    """Application configuration."""

    # RabbitMQ Configuration
    RABBITMQ_HOST = os.getenv('RABBITMQ_HOST', 'localhost')
    RABBITMQ_PORT = int(os.getenv('RABBITMQ_PORT', '5672'))
    RABBITMQ_USER = os.getenv('RABBITMQ_USER', 'guest')
    RABBITMQ_PASSWORD = os.getenv('RABBITMQ_PASSWORD', 'guest')
    RABBITMQ_EXCHANGE = os.getenv('RABBITMQ_EXCHANGE', RABBITMQ_CONFIG['exchange'])
    RABBITMQ_QUEUE = os.getenv('RABBITMQ_QUEUE', get_queue_name('tally_refresh'))
    RABBITMQ_PREFETCH_COUNT = int(os.getenv('RABBITMQ_PREFETCH_COUNT', '100'))
    # Queue limits
    QUEUE_MESSAGE_TTL_MS = int(os.getenv('QUEUE_MESSAGE_TTL_MS', '3600000'))
    QUEUE_MAX_LENGTH = int(os.getenv('QUEUE_MAX_LENGTH', '100000'))

    # PostgreSQL Configuration
    POSTGRES_HOST = os.getenv('POSTGRES_HOST', 'localhost')
    POSTGRES_PORT = int(os.getenv('POSTGRES_PORT', '5432'))
    POSTGRES_DB = os.getenv('POSTGRES_DB', 'ballot_db')
    POSTGRES_USER = os.getenv('POSTGRES_USER', 'ballot_user')
    POSTGRES_PASSWORD = os.getenv('POSTGRES_PASSWORD', 'ballot_pass')
    POSTGRES_MIN_CONNECTIONS = int(os.getenv('POSTGRES_MIN_CONNECTIONS', '1'))
    POSTGRES_MAX_CONNECTIONS = int(os.getenv('POSTGRES_MAX_CONNECTIONS', '4'))

    # Redis Configuration
    REDIS_HOST = os.getenv('REDIS_HOST', 'localhost')
    REDIS_PORT = int(os.getenv('REDIS_PORT', '6379'))
    REDIS_DB = int(os.getenv('REDIS_DB', '0'))
    REDIS_PASSWORD = os.getenv('REDIS_PASSWORD', None)
    REDIS_MAX_CONNECTIONS = int(os.getenv('REDIS_MAX_CONNECTIONS', '10'))

    # Batching Configuration
    BATCH_SIZE = int(os.getenv('BATCH_SIZE', '100'))
    BATCH_TIMEOUT_SECONDS = float(os.getenv('BATCH_TIMEOUT_SECONDS', '1.0'))

    # Prometheus Configuration
    PROMETHEUS_PORT = int(os.getenv('PROMETHEUS_PORT', '8001'))

    # Logging Configuration
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')

    @property
    def amqp_url(self) -> str:
        return (
            f"amqp://{self.RABBITMQ_USER}:{self.RABBITMQ_PASSWORD}"
            f"@{self.RABBITMQ_HOST}:{self.RABBITMQ_PORT}/"
        )


config = Config()
