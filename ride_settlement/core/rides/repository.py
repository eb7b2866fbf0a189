# ride_settlement/core/rides/repository.py
"""
Доступ к поездкам. Сервис расчётов читает поездку и меняет
только её платёжные поля.
"""

from __future__ import annotations

import json
from typing import Any, Optional

from asyncpg import Connection, Record

from ride_settlement.core.rides.models import Ride, RidePaymentDetails
from ride_settlement.infra.database import DatabaseManager


class RideRepository:
    """Репозиторий поездок."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def find_by_id(self, ride_id: str, conn: Optional[Connection] = None) -> Optional[Ride]:
        """Возвращает поездку или None."""
        executor = conn or self._db
        row = await executor.fetchrow(
            """
            SELECT id, driver_id, customer_id, status, payment_status,
                   payment_details, updated_at
            FROM rides
            WHERE id = $1
            """,
            ride_id,
        )
        if row is None:
            return None
        return _row_to_ride(row)

    async def update_payment_fields(
        self,
        ride_id: str,
        payment_status: str,
        details: RidePaymentDetails,
        conn: Optional[Connection] = None,
    ) -> bool:
        """
        Зеркалирует платёж на поездку.
        payment_details сливается с текущим объектом, чужие ключи сохраняются.

        Returns:
            True если поездка обновлена
        """
        executor = conn or self._db
        result = await executor.execute(
            """
            UPDATE rides
            SET payment_status = $2,
                payment_details = COALESCE(payment_details, '{}'::jsonb) || $3::jsonb,
                updated_at = NOW()
            WHERE id = $1
            """,
            ride_id,
            payment_status,
            details.model_dump_json(exclude_none=True),
        )
        return result == "UPDATE 1"


def _row_to_ride(row: Record) -> Ride:
    details: Any = row["payment_details"]
    if isinstance(details, str):
        details = json.loads(details)
    # Ключи сервиса поездок без payment_id не считаются зеркалом платежа
    has_payment = bool(details) and "payment_id" in details
    return Ride(
        id=row["id"],
        driver_id=row["driver_id"],
        customer_id=row["customer_id"],
        status=row["status"],
        payment_status=row["payment_status"],
        payment_details=RidePaymentDetails(**details) if has_payment else None,
        updated_at=row["updated_at"],
    )
