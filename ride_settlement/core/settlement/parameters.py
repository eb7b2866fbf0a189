# ride_settlement/core/settlement/parameters.py
"""
Версионированные параметры расчёта (комиссия, сборы, границы сумм, валюты).

Каждое изменение вставляет новую строку с version + 1. Текущая версия
кэшируется в Redis на короткий TTL и сбрасывается явно при изменении.
Если в БД нет ни одной версии, действуют значения из конфига (версия 0).
"""

from __future__ import annotations

from typing import Optional

import asyncpg
from asyncpg import Record
from pydantic import ValidationError as PydanticValidationError

from ride_settlement.common.exceptions import StateError, ValidationError
from ride_settlement.common.logger import log_info, log_warning
from ride_settlement.common.money import to_decimal
from ride_settlement.config.loader import SettlementSettings
from ride_settlement.core.settlement.models import SettlementParameters, SettlementParametersUpdate
from ride_settlement.infra.database import DatabaseManager
from ride_settlement.infra.event_bus import DomainEvent, EventBus, EventTypes
from ride_settlement.infra.redis_client import RedisClient

CACHE_KEY = "settlement:parameters:current"


def defaults_from_config(config: SettlementSettings) -> SettlementParameters:
    """Параметры версии 0 из секции settlement конфига."""
    return SettlementParameters(
        version=0,
        commission_rate=to_decimal(config.DEFAULT_COMMISSION_RATE),
        processing_fee_fixed=to_decimal(config.PROCESSING_FEE_FIXED),
        processing_fee_percentage=to_decimal(config.PROCESSING_FEE_PERCENTAGE),
        min_payment_amount=to_decimal(config.MIN_PAYMENT_AMOUNT),
        max_payment_amount=to_decimal(config.MAX_PAYMENT_AMOUNT),
        supported_currencies=list(config.SUPPORTED_CURRENCIES),
        updated_by="config",
    )


class SettlementParametersStore:
    """Чтение и изменение параметров расчёта."""

    def __init__(
        self,
        db: DatabaseManager,
        defaults: SettlementParameters,
        redis: Optional[RedisClient] = None,
        event_bus: Optional[EventBus] = None,
        cache_ttl: int = 60,
    ) -> None:
        self._db = db
        self._defaults = defaults
        self._redis = redis
        self._event_bus = event_bus
        self._cache_ttl = cache_ttl

    async def get_current(self) -> SettlementParameters:
        """Текущая версия: кэш, затем БД, затем значения конфига."""
        cached = await self._read_cache()
        if cached is not None:
            return cached

        params = await self._load_latest()
        await self._write_cache(params)
        return params

    async def update(
        self,
        changes: SettlementParametersUpdate,
        updated_by: str,
    ) -> SettlementParameters:
        """
        Применяет частичное изменение и сохраняет новую версию.

        Raises:
            ValidationError: INVALID_SETTLEMENT_PARAMETERS, если итог не проходит проверку
            StateError: SETTINGS_VERSION_CONFLICT, если версию успел изменить другой оператор
        """
        current = await self._load_latest()

        if changes.expected_version is not None and changes.expected_version != current.version:
            raise StateError(
                "SETTINGS_VERSION_CONFLICT",
                "Параметры расчёта уже изменены, обновите данные",
                {"expected_version": changes.expected_version, "current_version": current.version},
            )

        merged = current.model_dump(exclude={"version", "updated_by", "created_at"})
        merged.update(changes.model_dump(exclude_none=True, exclude={"expected_version"}))

        try:
            params = SettlementParameters(
                **merged,
                version=current.version + 1,
                updated_by=updated_by,
            )
        except PydanticValidationError as e:
            raise ValidationError(
                "INVALID_SETTLEMENT_PARAMETERS",
                "Некорректные параметры расчёта",
                {"errors": [err["msg"] for err in e.errors()]},
            ) from None

        try:
            created_at = await self._db.fetchval(
                """
                INSERT INTO payments_schema.settlement_parameters (
                    version, commission_rate, processing_fee_fixed, processing_fee_percentage,
                    min_payment_amount, max_payment_amount, supported_currencies, updated_by
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                RETURNING created_at
                """,
                params.version,
                params.commission_rate,
                params.processing_fee_fixed,
                params.processing_fee_percentage,
                params.min_payment_amount,
                params.max_payment_amount,
                params.supported_currencies,
                params.updated_by,
            )
        except asyncpg.UniqueViolationError:
            raise StateError(
                "SETTINGS_VERSION_CONFLICT",
                "Параметры расчёта уже изменены, обновите данные",
                {"current_version": current.version},
            ) from None

        params = params.model_copy(update={"created_at": created_at})
        await self._invalidate_cache()

        await log_info(
            f"Параметры расчёта обновлены до версии {params.version}",
            extra={"version": params.version, "updated_by": updated_by},
        )
        await self._publish_updated(params)
        return params

    # =========================================================================
    # ВНУТРЕННИЕ МЕТОДЫ
    # =========================================================================

    async def _load_latest(self) -> SettlementParameters:
        row = await self._db.fetchrow(
            """
            SELECT version, commission_rate, processing_fee_fixed, processing_fee_percentage,
                   min_payment_amount, max_payment_amount, supported_currencies,
                   updated_by, created_at
            FROM payments_schema.settlement_parameters
            ORDER BY version DESC
            LIMIT 1
            """
        )
        if row is None:
            return self._defaults
        return _row_to_parameters(row)

    async def _read_cache(self) -> Optional[SettlementParameters]:
        if self._redis is None:
            return None
        try:
            return await self._redis.get_model(CACHE_KEY, SettlementParameters)
        except Exception as e:
            await log_warning(f"Кэш параметров расчёта недоступен: {e}")
            return None

    async def _write_cache(self, params: SettlementParameters) -> None:
        if self._redis is None:
            return
        try:
            await self._redis.set_model(CACHE_KEY, params, ttl=self._cache_ttl)
        except Exception as e:
            await log_warning(f"Не удалось закэшировать параметры расчёта: {e}")

    async def _invalidate_cache(self) -> None:
        if self._redis is None:
            return
        try:
            await self._redis.delete(CACHE_KEY)
        except Exception as e:
            # Старая версия проживёт в кэше не дольше TTL
            await log_warning(f"Не удалось сбросить кэш параметров расчёта: {e}")

    async def _publish_updated(self, params: SettlementParameters) -> None:
        if self._event_bus is None:
            return
        try:
            await self._event_bus.publish(DomainEvent(
                event_type=EventTypes.SETTLEMENT_PARAMETERS_UPDATED,
                payload=params.model_dump(mode="json"),
            ))
        except Exception as e:
            await log_warning(f"Не удалось опубликовать изменение параметров: {e}")


def _row_to_parameters(row: Record) -> SettlementParameters:
    return SettlementParameters(
        version=row["version"],
        commission_rate=row["commission_rate"],
        processing_fee_fixed=row["processing_fee_fixed"],
        processing_fee_percentage=row["processing_fee_percentage"],
        min_payment_amount=row["min_payment_amount"],
        max_payment_amount=row["max_payment_amount"],
        supported_currencies=list(row["supported_currencies"]),
        updated_by=row["updated_by"],
        created_at=row["created_at"],
    )
