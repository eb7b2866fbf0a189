# ride_settlement/core/accounts/ledger.py
"""
Журнал денежных переводов (append-only).

Каждый перевод имеет уникальный reference вида "<payment_id>:<тип>".
Повторная запись того же перевода ничего не меняет.
"""

from __future__ import annotations

from typing import Optional

from asyncpg import Connection

from ride_settlement.common.constants import TransferStatus
from ride_settlement.common.logger import log_warning
from ride_settlement.core.accounts.models import MoneyTransfer
from ride_settlement.infra.database import DatabaseManager


class LedgerRecorder:
    """Запись переводов в payments_schema.money_transfers."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def record(
        self,
        transfer: MoneyTransfer,
        conn: Optional[Connection] = None,
    ) -> Optional[MoneyTransfer]:
        """
        Записывает перевод.

        Returns:
            Записанный перевод с id, либо None если перевод с таким reference уже есть
        """
        executor = conn or self._db
        row = await executor.fetchrow(
            """
            INSERT INTO payments_schema.money_transfers
                (reference, payment_id, ride_id,
                 from_account_id, from_role, to_account_id, to_role,
                 amount, currency, transfer_type, status)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
            ON CONFLICT (reference) DO NOTHING
            RETURNING id, created_at
            """,
            transfer.reference,
            transfer.payment_id,
            transfer.ride_id,
            transfer.from_party.account_id,
            transfer.from_party.role.value,
            transfer.to_party.account_id,
            transfer.to_party.role.value,
            transfer.amount,
            transfer.currency,
            transfer.transfer_type.value,
            transfer.status.value,
        )
        if row is None:
            await log_warning(
                f"Перевод {transfer.reference} уже записан",
                extra={"payment_id": transfer.payment_id, "ride_id": transfer.ride_id},
            )
            return None
        return transfer.model_copy(update={"id": row["id"], "created_at": row["created_at"]})

    async def update_status(
        self,
        reference: str,
        status: TransferStatus,
        conn: Optional[Connection] = None,
    ) -> bool:
        """Единственное допустимое изменение перевода: смена статуса."""
        executor = conn or self._db
        result = await executor.execute(
            """
            UPDATE payments_schema.money_transfers
            SET status = $2, updated_at = NOW()
            WHERE reference = $1
            """,
            reference,
            status.value,
        )
        return result == "UPDATE 1"
