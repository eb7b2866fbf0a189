# ride_settlement/core/users/repository.py
"""
Накопительная статистика профилей: капитан, клиент, компания.

Все изменения выполняются одним UPSERT с приращением в БД,
поэтому параллельные расчёты не теряют обновления.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from asyncpg import Connection

from ride_settlement.infra.database import DatabaseManager


class CaptainRepository:
    """Профиль капитана: заработок и число поездок."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def increment_stats(
        self,
        captain_id: str,
        earnings: Decimal,
        rides_delta: int = 1,
        conn: Optional[Connection] = None,
    ) -> None:
        """
        Добавляет заработок и поездки капитану.

        Args:
            captain_id: ID капитана
            earnings: Заработок за поездку
            rides_delta: Сколько поездок добавить
            conn: Соединение внешней транзакции
        """
        executor = conn or self._db
        await executor.execute(
            """
            INSERT INTO driver_profiles (user_id, total_earnings, total_rides, last_payment_date)
            VALUES ($1, $2, $3, $4)
            ON CONFLICT (user_id) DO UPDATE SET
                total_earnings = driver_profiles.total_earnings + EXCLUDED.total_earnings,
                total_rides = driver_profiles.total_rides + EXCLUDED.total_rides,
                last_payment_date = EXCLUDED.last_payment_date
            """,
            captain_id,
            earnings,
            rides_delta,
            datetime.now(timezone.utc),
        )


class CustomerRepository:
    """Профиль клиента: сумма трат и число поездок."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def increment_stats(
        self,
        customer_id: str,
        spent: Decimal,
        rides_delta: int = 1,
        conn: Optional[Connection] = None,
    ) -> None:
        executor = conn or self._db
        await executor.execute(
            """
            INSERT INTO passenger_profiles (user_id, total_spent, total_rides)
            VALUES ($1, $2, $3)
            ON CONFLICT (user_id) DO UPDATE SET
                total_spent = passenger_profiles.total_spent + EXCLUDED.total_spent,
                total_rides = passenger_profiles.total_rides + EXCLUDED.total_rides
            """,
            customer_id,
            spent,
            rides_delta,
        )


class AdminRepository:
    """Итоги компании по комиссиям."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def increment_totals(
        self,
        owner_id: str,
        commission: Decimal,
        conn: Optional[Connection] = None,
    ) -> None:
        executor = conn or self._db
        await executor.execute(
            """
            INSERT INTO admin_totals (owner_id, total_commissions, total_system_earnings)
            VALUES ($1, $2, $2)
            ON CONFLICT (owner_id) DO UPDATE SET
                total_commissions = admin_totals.total_commissions + EXCLUDED.total_commissions,
                total_system_earnings = admin_totals.total_system_earnings + EXCLUDED.total_system_earnings
            """,
            owner_id,
            commission,
        )
