# ride_settlement/core/accounts/__init__.py
"""
Финансовые счета и журнал денежных переводов.
"""

from ride_settlement.core.accounts.models import AccountLogEntry, FinancialAccount, MoneyTransfer, TransferParty
from ride_settlement.core.accounts.repository import AccountRepository
from ride_settlement.core.accounts.ledger import LedgerRecorder

__all__ = [
    "AccountLogEntry",
    "FinancialAccount",
    "MoneyTransfer",
    "TransferParty",
    "AccountRepository",
    "LedgerRecorder",
]
