# ride_settlement/services/payments/dependencies.py
"""
Dependency Injection для сервиса расчётов.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ride_settlement.config.loader import Settings
    from ride_settlement.infra.database import DatabaseManager
    from ride_settlement.infra.event_bus import EventBus
    from ride_settlement.infra.redis_client import RedisClient
    from ride_settlement.services.payments.service import PaymentService


# Синглтоны для инфраструктуры
_db: "DatabaseManager | None" = None
_redis: "RedisClient | None" = None
_event_bus: "EventBus | None" = None

# Синглтон сервиса
_payment_service: "PaymentService | None" = None


async def init_dependencies(
    db: "DatabaseManager",
    redis: "RedisClient | None",
    event_bus: "EventBus | None",
) -> None:
    """
    Инициализировать зависимости при старте приложения.
    Redis и шина событий необязательны: без них расчёт работает без кэша и событий.
    """
    global _db, _redis, _event_bus
    _db = db
    _redis = redis
    _event_bus = event_bus


def get_db() -> "DatabaseManager":
    """Получить менеджер базы данных."""
    if _db is None:
        raise RuntimeError("База данных не инициализирована. Вызовите init_dependencies()")
    return _db


def get_redis() -> "RedisClient | None":
    return _redis


def get_event_bus() -> "EventBus | None":
    return _event_bus


def get_settings() -> "Settings":
    from ride_settlement.config import settings
    return settings


def get_payment_service() -> "PaymentService":
    """Получить сервис расчётов."""
    global _payment_service

    if _payment_service is None:
        from ride_settlement.services.payments.service import PaymentService
        _payment_service = PaymentService(
            db=get_db(),
            redis=get_redis(),
            event_bus=get_event_bus(),
            settings=get_settings(),
        )

    return _payment_service


async def cleanup_dependencies() -> None:
    """Очистить ресурсы при остановке приложения."""
    global _db, _redis, _event_bus, _payment_service
    _payment_service = None
    _db = None
    _redis = None
    _event_bus = None
