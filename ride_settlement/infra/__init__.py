# ride_settlement/infra/__init__.py
"""
Инфраструктурный слой: PostgreSQL, Redis, RabbitMQ.
"""

from ride_settlement.infra.database import DatabaseManager, get_db
from ride_settlement.infra.redis_client import RedisClient, get_redis
from ride_settlement.infra.event_bus import EventBus, get_event_bus

__all__ = [
    "DatabaseManager",
    "get_db",
    "RedisClient",
    "get_redis",
    "EventBus",
    "get_event_bus",
]
