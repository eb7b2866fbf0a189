# tests/core/test_accounts_ledger.py
"""
Тесты репозитория счетов и журнала переводов.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from ride_settlement.common.constants import AccountRole, TransferStatus, TransferType
from ride_settlement.common.exceptions import NotFoundError
from ride_settlement.core.accounts.ledger import LedgerRecorder
from ride_settlement.core.accounts.models import AccountLogEntry, MoneyTransfer, TransferParty
from ride_settlement.core.accounts.repository import AccountRepository

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _account_row(**overrides) -> dict:
    row = {
        "id": 7,
        "owner_id": "cap-1",
        "role": "driver",
        "vault": Decimal("0.00"),
        "currency": "IQD",
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


def _transfer(**overrides) -> MoneyTransfer:
    data = {
        "reference": MoneyTransfer.make_reference("pay-1", TransferType.COMMISSION),
        "payment_id": "pay-1",
        "ride_id": "ride-1",
        "from_party": TransferParty(account_id=7, role=AccountRole.DRIVER),
        "to_party": TransferParty(account_id=1, role=AccountRole.ADMIN),
        "amount": Decimal("450.00"),
        "currency": "IQD",
        "transfer_type": TransferType.COMMISSION,
    }
    data.update(overrides)
    return MoneyTransfer(**data)


class TestAccountRepository:
    """Счета владельцев."""

    @pytest.mark.asyncio
    async def test_find_or_create_upserts(self, mock_db):
        mock_db.fetchrow.return_value = _account_row()

        account = await AccountRepository(mock_db, "admin-1").find_or_create("cap-1", AccountRole.DRIVER, "IQD")

        assert account.id == 7
        assert account.role is AccountRole.DRIVER
        query, *args = mock_db.fetchrow.call_args.args
        assert "ON CONFLICT (owner_id, role)" in query
        assert args == ["cap-1", "driver", "IQD"]

    @pytest.mark.asyncio
    async def test_admin_account_owner_from_config(self, mock_db):
        mock_db.fetchrow.return_value = _account_row(id=1, owner_id="admin-1", role="admin")
        repo = AccountRepository(mock_db, "admin-1")

        account = await repo.find_or_create_admin_account("IQD")

        assert account.owner_id == "admin-1"
        assert repo.admin_owner_id == "admin-1"
        assert mock_db.fetchrow.call_args.args[1:] == ("admin-1", "admin", "IQD")

    @pytest.mark.asyncio
    async def test_increment_is_atomic_update(self, mock_db):
        mock_db.fetchval.return_value = Decimal("2550.00")

        vault = await AccountRepository(mock_db, "admin-1").increment(7, Decimal("2550.00"))

        assert vault == Decimal("2550.00")
        query, account_id, amount = mock_db.fetchval.call_args.args
        assert "vault = vault + $2" in query
        assert (account_id, amount) == (7, Decimal("2550.00"))

    @pytest.mark.asyncio
    async def test_increment_missing_account(self, mock_db):
        mock_db.fetchval.return_value = None
        with pytest.raises(NotFoundError) as exc_info:
            await AccountRepository(mock_db, "admin-1").increment(99, Decimal("1"))
        assert exc_info.value.error_code == "ACCOUNT_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_uses_transaction_connection(self, mock_db):
        conn = AsyncMock()
        conn.fetchval.return_value = Decimal("10.00")

        await AccountRepository(mock_db, "admin-1").increment(7, Decimal("10.00"), conn=conn)

        conn.fetchval.assert_awaited_once()
        mock_db.fetchval.assert_not_called()

    @pytest.mark.asyncio
    async def test_get_missing(self, mock_db):
        assert await AccountRepository(mock_db, "admin-1").get(99) is None

    @pytest.mark.asyncio
    async def test_append_log_entry(self, mock_db):
        mock_db.fetchval.return_value = 15
        entry = AccountLogEntry(
            account_id=7,
            amount=Decimal("-450.00"),
            description="Комиссия за поездку ride-1",
            transfer_id=3,
            ride_id="ride-1",
            captain_id="cap-1",
        )

        entry_id = await AccountRepository(mock_db, "admin-1").append_log_entry(entry)

        assert entry_id == 15
        assert mock_db.fetchval.call_args.args[1:] == (
            7, 3, Decimal("-450.00"), "Комиссия за поездку ride-1", "ride-1", "cap-1",
        )


class TestLedgerRecorder:
    """Журнал переводов."""

    def test_reference_format(self):
        assert MoneyTransfer.make_reference("pay-1", TransferType.RIDE_EARNINGS) == "pay-1:customer-to-driver"

    @pytest.mark.asyncio
    async def test_record_new_transfer(self, mock_db):
        mock_db.fetchrow.return_value = {"id": 3, "created_at": NOW}

        recorded = await LedgerRecorder(mock_db).record(_transfer())

        assert recorded.id == 3
        assert recorded.created_at == NOW
        query, *args = mock_db.fetchrow.call_args.args
        assert "ON CONFLICT (reference) DO NOTHING" in query
        assert args[0] == "pay-1:driver-to-admin"
        assert args[9:] == ["driver-to-admin", "completed"]

    @pytest.mark.asyncio
    async def test_record_duplicate_reference(self, mock_db):
        mock_db.fetchrow.return_value = None
        assert await LedgerRecorder(mock_db).record(_transfer()) is None

    @pytest.mark.asyncio
    async def test_update_status(self, mock_db):
        assert await LedgerRecorder(mock_db).update_status("pay-1:driver-to-admin", TransferStatus.FAILED) is True
        assert mock_db.execute.call_args.args[1:] == ("pay-1:driver-to-admin", "failed")

    @pytest.mark.asyncio
    async def test_update_status_unknown_reference(self, mock_db):
        mock_db.execute.return_value = "UPDATE 0"
        assert await LedgerRecorder(mock_db).update_status("missing", TransferStatus.FAILED) is False

    def test_negative_amount_rejected(self):
        with pytest.raises(ValueError):
            _transfer(amount=Decimal("-1"))
