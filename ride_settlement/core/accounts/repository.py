# ride_settlement/core/accounts/repository.py
"""
Репозиторий финансовых счетов.

Баланс меняется только атомарным UPDATE vault = vault + $n в БД,
никогда через чтение-изменение-запись в памяти.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Optional

from asyncpg import Connection, Record

from ride_settlement.common.constants import AccountRole
from ride_settlement.common.exceptions import NotFoundError
from ride_settlement.core.accounts.models import AccountLogEntry, FinancialAccount
from ride_settlement.infra.database import DatabaseManager


class AccountRepository:
    """Счета водителей, клиентов и счёт компании."""

    def __init__(self, db: DatabaseManager, admin_owner_id: str) -> None:
        """
        Args:
            db: Менеджер базы данных
            admin_owner_id: Владелец счёта компании (из конфига)
        """
        self._db = db
        self._admin_owner_id = admin_owner_id

    @property
    def admin_owner_id(self) -> str:
        return self._admin_owner_id

    async def find_or_create(
        self,
        owner_id: str,
        role: AccountRole,
        currency: str,
        conn: Optional[Connection] = None,
    ) -> FinancialAccount:
        """
        Возвращает счёт владельца, создавая его при первом обращении.

        Один INSERT ... ON CONFLICT: два одновременных расчёта
        не создадут два счёта.
        """
        executor = conn or self._db
        row = await executor.fetchrow(
            """
            INSERT INTO payments_schema.financial_accounts (owner_id, role, currency)
            VALUES ($1, $2, $3)
            ON CONFLICT (owner_id, role) DO UPDATE
                SET owner_id = EXCLUDED.owner_id
            RETURNING id, owner_id, role, vault, currency, created_at, updated_at
            """,
            owner_id,
            role.value,
            currency,
        )
        return _row_to_account(row)

    async def find_or_create_admin_account(
        self,
        currency: str,
        conn: Optional[Connection] = None,
    ) -> FinancialAccount:
        """Счёт компании, владелец задан конфигурацией."""
        return await self.find_or_create(self._admin_owner_id, AccountRole.ADMIN, currency, conn=conn)

    async def get(self, account_id: int, conn: Optional[Connection] = None) -> Optional[FinancialAccount]:
        executor = conn or self._db
        row = await executor.fetchrow(
            """
            SELECT id, owner_id, role, vault, currency, created_at, updated_at
            FROM payments_schema.financial_accounts
            WHERE id = $1
            """,
            account_id,
        )
        return _row_to_account(row) if row else None

    async def increment(
        self,
        account_id: int,
        amount: Decimal,
        conn: Optional[Connection] = None,
    ) -> Decimal:
        """
        Атомарно увеличивает баланс счёта.

        Returns:
            Новый баланс

        Raises:
            NotFoundError: если счёта нет
        """
        executor = conn or self._db
        vault = await executor.fetchval(
            """
            UPDATE payments_schema.financial_accounts
            SET vault = vault + $2, updated_at = NOW()
            WHERE id = $1
            RETURNING vault
            """,
            account_id,
            amount,
        )
        if vault is None:
            raise NotFoundError("ACCOUNT_NOT_FOUND", f"Счёт {account_id} не найден")
        return vault

    async def append_log_entry(
        self,
        entry: AccountLogEntry,
        conn: Optional[Connection] = None,
    ) -> int:
        """Добавляет строку в журнал операций счёта. Возвращает её ID."""
        executor = conn or self._db
        return await executor.fetchval(
            """
            INSERT INTO payments_schema.account_transactions
                (account_id, transfer_id, amount, description, ride_id, captain_id)
            VALUES ($1, $2, $3, $4, $5, $6)
            RETURNING id
            """,
            entry.account_id,
            entry.transfer_id,
            entry.amount,
            entry.description,
            entry.ride_id,
            entry.captain_id,
        )


def _row_to_account(row: Record) -> FinancialAccount:
    return FinancialAccount(
        id=row["id"],
        owner_id=row["owner_id"],
        role=AccountRole(row["role"]),
        vault=row["vault"],
        currency=row["currency"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )
