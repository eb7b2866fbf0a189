# ride_settlement/core/accounts/models.py
"""
Финансовые счета и журнал денежных переводов.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ride_settlement.common.constants import AccountRole, TransferStatus, TransferType
from ride_settlement.common.money import ZERO


class FinancialAccount(BaseModel):
    """Счёт владельца. Создаётся лениво при первой операции, не удаляется."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    owner_id: str
    role: AccountRole
    vault: Decimal = ZERO
    currency: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class TransferParty(BaseModel):
    """Сторона перевода."""

    account_id: int
    role: AccountRole


class MoneyTransfer(BaseModel):
    """
    Запись журнала переводов. Неизменяема, кроме status.

    reference уникален: повторная запись того же шага расчёта
    не создаёт второй перевод.
    """

    id: Optional[int] = None
    reference: str = Field(..., description="Ключ идемпотентности")
    payment_id: str
    ride_id: str
    from_party: TransferParty
    to_party: TransferParty
    amount: Decimal = Field(..., ge=0)
    currency: str
    transfer_type: TransferType
    status: TransferStatus = TransferStatus.COMPLETED
    created_at: Optional[datetime] = None

    @staticmethod
    def make_reference(payment_id: str, transfer_type: TransferType) -> str:
        return f"{payment_id}:{transfer_type.value}"


class AccountLogEntry(BaseModel):
    """Строка журнала операций счёта."""

    account_id: int
    amount: Decimal
    description: str
    transfer_id: Optional[int] = None
    ride_id: Optional[str] = None
    captain_id: Optional[str] = None
    created_at: Optional[datetime] = None
