# tests/services/test_dependencies.py
"""
Тесты DI сервиса расчётов.
"""

from __future__ import annotations

import pytest

from ride_settlement.services.payments import dependencies
from ride_settlement.services.payments.service import PaymentService


@pytest.fixture(autouse=True)
def reset_dependencies(monkeypatch):
    for name in ("_db", "_redis", "_event_bus", "_payment_service"):
        monkeypatch.setattr(dependencies, name, None)


class TestDependencies:
    """Синглтоны инфраструктуры и сервиса."""

    def test_db_not_initialized(self):
        with pytest.raises(RuntimeError):
            dependencies.get_db()

    @pytest.mark.asyncio
    async def test_init_and_get(self, mock_db, mock_redis, mock_event_bus):
        await dependencies.init_dependencies(mock_db, mock_redis, mock_event_bus)

        assert dependencies.get_db() is mock_db
        assert dependencies.get_redis() is mock_redis
        assert dependencies.get_event_bus() is mock_event_bus

    @pytest.mark.asyncio
    async def test_optional_cache_and_bus(self, mock_db):
        await dependencies.init_dependencies(mock_db, None, None)

        service = dependencies.get_payment_service()

        assert service.redis is None
        assert service.event_bus is None

    @pytest.mark.asyncio
    async def test_service_singleton(self, mock_db, mock_redis, mock_event_bus):
        await dependencies.init_dependencies(mock_db, mock_redis, mock_event_bus)

        first = dependencies.get_payment_service()
        second = dependencies.get_payment_service()

        assert isinstance(first, PaymentService)
        assert first is second
        assert first.db is mock_db

    @pytest.mark.asyncio
    async def test_cleanup_resets_service(self, mock_db, mock_redis, mock_event_bus):
        await dependencies.init_dependencies(mock_db, mock_redis, mock_event_bus)
        first = dependencies.get_payment_service()

        await dependencies.cleanup_dependencies()
        await dependencies.init_dependencies(mock_db, mock_redis, mock_event_bus)

        assert dependencies.get_payment_service() is not first
