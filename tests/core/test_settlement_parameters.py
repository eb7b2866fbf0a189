# tests/core/test_settlement_parameters.py
"""
Тесты версионированных параметров расчёта.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import asyncpg
import pytest
from pydantic import ValidationError as PydanticValidationError

from ride_settlement.common.exceptions import StateError, ValidationError
from ride_settlement.config.loader import SettlementSettings
from ride_settlement.core.settlement.models import SettlementParameters, SettlementParametersUpdate
from ride_settlement.core.settlement.parameters import (
    CACHE_KEY,
    SettlementParametersStore,
    defaults_from_config,
)
from ride_settlement.infra.event_bus import EventTypes

CREATED_AT = datetime(2024, 5, 1, tzinfo=timezone.utc)


@pytest.fixture
def defaults() -> SettlementParameters:
    return defaults_from_config(SettlementSettings())


def _row(version: int = 2, **overrides) -> dict:
    row = {
        "version": version,
        "commission_rate": Decimal("0.2000"),
        "processing_fee_fixed": Decimal("0.00"),
        "processing_fee_percentage": Decimal("0.0000"),
        "min_payment_amount": Decimal("0.00"),
        "max_payment_amount": Decimal("1000000.00"),
        "supported_currencies": ["IQD", "USD"],
        "updated_by": "ops",
        "created_at": CREATED_AT,
    }
    row.update(overrides)
    return row


class TestDefaults:
    """Версия 0 из конфига."""

    def test_defaults_from_config(self, defaults):
        assert defaults.version == 0
        assert defaults.commission_rate == Decimal("0.15")
        assert defaults.supported_currencies == ["IQD", "USD", "EUR"]
        assert defaults.updated_by == "config"

    def test_float_config_converted_exactly(self):
        params = defaults_from_config(SettlementSettings(DEFAULT_COMMISSION_RATE=0.1))
        assert params.commission_rate == Decimal("0.1")

    def test_scale_matches_columns(self):
        """Ставка хранится с 4 знаками, суммы с 2: нули в хвосте допустимы."""
        params = SettlementParameters(
            commission_rate=Decimal("0.123400"),
            processing_fee_fixed=Decimal("1.50"),
            max_payment_amount=Decimal("999999999999.99"),
        )
        assert params.commission_rate == Decimal("0.1234")

    @pytest.mark.parametrize("overrides", [
        {"commission_rate": Decimal("0.12345")},
        {"max_payment_amount": Decimal("1000000000000.00")},
        {"min_payment_amount": Decimal("0.001")},
    ])
    def test_values_outside_columns_rejected(self, overrides):
        with pytest.raises(PydanticValidationError):
            SettlementParameters(**{"commission_rate": Decimal("0.15"), **overrides})


class TestGetCurrent:
    """Чтение: кэш, БД, конфиг."""

    @pytest.mark.asyncio
    async def test_cache_hit(self, mock_db, mock_redis, defaults):
        cached = defaults.model_copy(update={"version": 7})
        mock_redis.get_model.return_value = cached
        store = SettlementParametersStore(mock_db, defaults, redis=mock_redis)

        assert await store.get_current() == cached
        mock_db.fetchrow.assert_not_called()

    @pytest.mark.asyncio
    async def test_loads_latest_and_caches(self, mock_db, mock_redis, defaults):
        mock_db.fetchrow.return_value = _row(version=4)
        store = SettlementParametersStore(mock_db, defaults, redis=mock_redis, cache_ttl=30)

        params = await store.get_current()

        assert params.version == 4
        assert params.commission_rate == Decimal("0.2")
        assert "ORDER BY version DESC" in mock_db.fetchrow.call_args.args[0]
        mock_redis.set_model.assert_awaited_once_with(CACHE_KEY, params, ttl=30)

    @pytest.mark.asyncio
    async def test_falls_back_to_defaults(self, mock_db, defaults):
        store = SettlementParametersStore(mock_db, defaults)
        assert await store.get_current() == defaults

    @pytest.mark.asyncio
    async def test_cache_outage(self, mock_db, mock_redis, defaults):
        mock_redis.get_model.side_effect = ConnectionError("redis down")
        mock_redis.set_model.side_effect = ConnectionError("redis down")
        mock_db.fetchrow.return_value = _row(version=4)
        store = SettlementParametersStore(mock_db, defaults, redis=mock_redis)

        assert (await store.get_current()).version == 4


class TestUpdate:
    """Изменение параметров новой версией."""

    @pytest.mark.asyncio
    async def test_creates_next_version(self, mock_db, mock_redis, mock_event_bus, defaults):
        mock_db.fetchrow.return_value = _row(version=2)
        mock_db.fetchval.return_value = CREATED_AT
        store = SettlementParametersStore(mock_db, defaults, redis=mock_redis, event_bus=mock_event_bus)

        params = await store.update(
            SettlementParametersUpdate(commission_rate=Decimal("0.12")),
            updated_by="ops-2",
        )

        assert params.version == 3
        assert params.commission_rate == Decimal("0.12")
        assert params.supported_currencies == ["IQD", "USD"]
        assert params.updated_by == "ops-2"
        assert params.created_at == CREATED_AT

        args = mock_db.fetchval.call_args.args
        assert "INSERT INTO payments_schema.settlement_parameters" in args[0]
        assert args[1] == 3
        mock_redis.delete.assert_awaited_once_with(CACHE_KEY)
        event = mock_event_bus.publish.call_args.args[0]
        assert event.event_type == EventTypes.SETTLEMENT_PARAMETERS_UPDATED
        assert event.payload["version"] == 3

    @pytest.mark.asyncio
    async def test_first_update_over_defaults(self, mock_db, defaults):
        mock_db.fetchval.return_value = CREATED_AT
        store = SettlementParametersStore(mock_db, defaults)

        params = await store.update(
            SettlementParametersUpdate(supported_currencies=["usd", "iqd", "usd"]),
            updated_by="ops",
        )

        assert params.version == 1
        assert params.supported_currencies == ["USD", "IQD"]
        assert params.commission_rate == defaults.commission_rate

    @pytest.mark.asyncio
    async def test_expected_version_mismatch(self, mock_db, defaults):
        mock_db.fetchrow.return_value = _row(version=5)
        store = SettlementParametersStore(mock_db, defaults)

        with pytest.raises(StateError) as exc_info:
            await store.update(
                SettlementParametersUpdate(commission_rate=Decimal("0.1"), expected_version=4),
                updated_by="ops",
            )

        assert exc_info.value.error_code == "SETTINGS_VERSION_CONFLICT"
        mock_db.fetchval.assert_not_called()

    @pytest.mark.asyncio
    async def test_concurrent_insert_conflict(self, mock_db, defaults):
        """Две правки одной версии: вторая упирается в уникальный version."""
        mock_db.fetchrow.return_value = _row(version=5)
        mock_db.fetchval.side_effect = asyncpg.UniqueViolationError("settlement_parameters_pkey")
        store = SettlementParametersStore(mock_db, defaults)

        with pytest.raises(StateError) as exc_info:
            await store.update(SettlementParametersUpdate(commission_rate=Decimal("0.1")), updated_by="ops")

        assert exc_info.value.error_code == "SETTINGS_VERSION_CONFLICT"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("changes", [
        {"commission_rate": Decimal("1.5")},
        {"min_payment_amount": Decimal("2000000")},
        {"supported_currencies": []},
        {"processing_fee_fixed": Decimal("-1")},
        {"commission_rate": Decimal("0.12345")},
        {"processing_fee_percentage": Decimal("0.00001")},
        {"processing_fee_fixed": Decimal("1.005")},
        {"max_payment_amount": Decimal("10000000000000")},
    ])
    async def test_invalid_result_rejected(self, mock_db, defaults, changes):
        store = SettlementParametersStore(mock_db, defaults)

        with pytest.raises(ValidationError) as exc_info:
            await store.update(SettlementParametersUpdate(**changes), updated_by="ops")

        assert exc_info.value.error_code == "INVALID_SETTLEMENT_PARAMETERS"
        assert exc_info.value.details["errors"]
        mock_db.fetchval.assert_not_called()
