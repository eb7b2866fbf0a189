# tests/core/test_rides_and_profiles.py
"""
Тесты репозитория поездок и накопительной статистики профилей.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from ride_settlement.core.rides.models import Ride, RidePaymentDetails
from ride_settlement.core.rides.repository import RideRepository
from ride_settlement.core.users.repository import (
    AdminRepository,
    CaptainRepository,
    CustomerRepository,
)

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _ride_row(**overrides) -> dict:
    row = {
        "id": "ride-1",
        "driver_id": "cap-1",
        "customer_id": "cust-1",
        "status": "completed",
        "payment_status": None,
        "payment_details": None,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


class TestRideRepository:
    """Чтение поездки и зеркалирование платежа."""

    @pytest.mark.asyncio
    async def test_find_by_id(self, mock_db):
        mock_db.fetchrow.return_value = _ride_row()

        ride = await RideRepository(mock_db).find_by_id("ride-1")

        assert ride.driver_id == "cap-1"
        assert ride.is_payable is True
        assert ride.payment_details is None

    @pytest.mark.asyncio
    async def test_find_missing(self, mock_db):
        assert await RideRepository(mock_db).find_by_id("missing") is None

    @pytest.mark.asyncio
    async def test_payment_details_from_json_string(self, mock_db):
        """asyncpg без кодека отдаёт jsonb строкой."""
        details = {
            "received_amount": "2000.00",
            "expected_amount": "3000.00",
            "currency": "IQD",
            "payment_timestamp": NOW.isoformat(),
            "payment_id": "pay-1",
            "reason": "short change",
            "amount_shortage": "1000.00",
        }
        mock_db.fetchrow.return_value = _ride_row(payment_status="partial", payment_details=json.dumps(details))

        ride = await RideRepository(mock_db).find_by_id("ride-1")

        assert ride.payment_details.amount_shortage == Decimal("1000.00")
        assert ride.payment_details.reason == "short change"

    @pytest.mark.asyncio
    async def test_foreign_details_without_payment(self, mock_db):
        """Ключи сервиса поездок без платежа не ломают чтение."""
        mock_db.fetchrow.return_value = _ride_row(payment_details={"tip_hint": "cash"})

        ride = await RideRepository(mock_db).find_by_id("ride-1")

        assert ride.payment_details is None

    @pytest.mark.parametrize("status, payable", [
        ("completed", True),
        ("awaiting_payment", True),
        ("onRide", False),
        ("requested", False),
    ])
    def test_is_payable(self, status, payable):
        assert Ride(id="ride-1", status=status).is_payable is payable

    @pytest.mark.asyncio
    async def test_update_payment_fields(self, mock_db):
        details = RidePaymentDetails(
            received_amount=Decimal("3000.00"),
            expected_amount=Decimal("3000.00"),
            currency="IQD",
            payment_timestamp=NOW,
            payment_id="pay-1",
        )

        assert await RideRepository(mock_db).update_payment_fields("ride-1", "full", details) is True

        query, ride_id, status, payload = mock_db.execute.call_args.args
        # Ключи сервиса поездок сохраняются: объект сливается, а не заменяется
        assert "payment_details = COALESCE(payment_details, '{}'::jsonb) || $3::jsonb" in query
        assert (ride_id, status) == ("ride-1", "full")
        # Поля частичной оплаты не пишутся для полной
        assert "amount_shortage" not in json.loads(payload)

    @pytest.mark.asyncio
    async def test_update_vanished_ride(self, mock_db):
        mock_db.execute.return_value = "UPDATE 0"
        details = RidePaymentDetails(
            received_amount=Decimal("1"),
            expected_amount=Decimal("1"),
            currency="IQD",
            payment_timestamp=NOW,
            payment_id="pay-1",
        )
        assert await RideRepository(mock_db).update_payment_fields("ride-1", "full", details) is False


class TestProfileStats:
    """Накопительные UPSERT."""

    @pytest.mark.asyncio
    async def test_captain_stats_increment(self, mock_db):
        await CaptainRepository(mock_db).increment_stats("cap-1", Decimal("2550.00"))

        query, captain_id, earnings, rides, paid_at = mock_db.execute.call_args.args
        assert "total_earnings = driver_profiles.total_earnings + EXCLUDED.total_earnings" in query
        assert (captain_id, earnings, rides) == ("cap-1", Decimal("2550.00"), 1)
        assert paid_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_customer_stats_increment(self, mock_db):
        await CustomerRepository(mock_db).increment_stats("cust-1", Decimal("3000.00"), rides_delta=1)

        query, *args = mock_db.execute.call_args.args
        assert "passenger_profiles.total_spent + EXCLUDED.total_spent" in query
        assert args == ["cust-1", Decimal("3000.00"), 1]

    @pytest.mark.asyncio
    async def test_admin_totals_increment(self, mock_db):
        await AdminRepository(mock_db).increment_totals("admin-1", Decimal("450.00"))

        query, *args = mock_db.execute.call_args.args
        assert "admin_totals.total_commissions + EXCLUDED.total_commissions" in query
        assert args == ["admin-1", Decimal("450.00")]
