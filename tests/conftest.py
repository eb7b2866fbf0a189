# tests/conftest.py
"""
Общие фикстуры и настройки для тестов.

Кроме моков инфраструктуры здесь живёт in-memory хранилище расчётов:
транзакции фейковой БД применяют изменения только при успешном выходе
из блока и выполняются строго по одной (как блокировка строки платежа).
"""

from __future__ import annotations

import asyncio
import json
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, AsyncGenerator, Callable, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

# Устанавливаем переменные окружения перед импортом модулей
os.environ.setdefault("DB_PASSWORD", "test_password")
os.environ.setdefault("REDIS_PASSWORD", "")
os.environ.setdefault("RABBITMQ_PASSWORD", "guest")
os.environ.setdefault("ADMIN_OWNER_ID", "admin-1")

from ride_settlement.common.constants import AccountRole, PaymentStatus, RideStatus
from ride_settlement.common.exceptions import PersistenceError, StateError
from ride_settlement.core.accounts.models import AccountLogEntry, FinancialAccount, MoneyTransfer
from ride_settlement.core.rides.models import Ride, RidePaymentDetails
from ride_settlement.core.settlement.models import Payment, SettlementParameters
from ride_settlement.core.settlement.orchestrator import SettlementOrchestrator


# =============================================================================
# ФИКСТУРЫ КОНФИГУРАЦИИ
# =============================================================================

@pytest.fixture(scope="session")
def project_root() -> Path:
    """Корневая директория проекта."""
    return Path(__file__).parent.parent


@pytest.fixture(scope="session")
def config_path(project_root: Path) -> Path:
    """Путь к файлу конфигурации."""
    return project_root / "config" / "config.json"


@pytest.fixture
def mock_config() -> dict[str, Any]:
    """Мок конфигурации для тестов."""
    return {
        "PROJECT_NAME": "ride_settlement_test",
        "VERSION": "1.0.0-test",
        "DEBUG": True,
        "LOG_LEVEL": "DEBUG",
        "ENVIRONMENT": "test",
        "COMPONENT_MODE": "worker",
        "LOG_TO_FILE": False,
        "LOG_FILE_PATH": "logs/test.log",
        "LOG_FORMAT": "colored",
        "PAYMENTS_SERVICE_PORT": 9087,
        "DB_HOST": "localhost",
        "DB_PORT": 5432,
        "DB_NAME": "ride_settlement_test",
        "DB_USER": "postgres",
        "DB_MIN_POOL_SIZE": 2,
        "DB_MAX_POOL_SIZE": 5,
        "DB_COMMAND_TIMEOUT": 30,
        "DB_RETRY_ATTEMPTS": 2,
        "DB_RETRY_DELAY": 0.5,
        "REDIS_HOST": "localhost",
        "REDIS_PORT": 6379,
        "REDIS_DB": 1,
        "REDIS_NAMESPACE": "settlement_test",
        "REDIS_MAX_CONNECTIONS": 10,
        "PAYMENT_TTL": 120,
        "RECENT_PAYMENTS_TTL": 600,
        "RECENT_PAYMENTS_LIMIT": 20,
        "SETTLEMENT_PARAMETERS_TTL": 30,
        "RABBITMQ_HOST": "localhost",
        "RABBITMQ_PORT": 5672,
        "RABBITMQ_USER": "guest",
        "RABBITMQ_VHOST": "/",
        "RABBITMQ_EXCHANGE": "settlement.test",
        "RABBITMQ_PREFETCH_COUNT": 5,
        "DEFAULT_COMMISSION_RATE": 0.2,
        "PROCESSING_FEE_FIXED": 1.5,
        "PROCESSING_FEE_PERCENTAGE": 0.01,
        "MIN_PAYMENT_AMOUNT": 0,
        "MAX_PAYMENT_AMOUNT": 500000,
        "SUPPORTED_CURRENCIES": ["iqd", "usd"],
        "DEFAULT_CURRENCY": "IQD",
        "ADMIN_OWNER_ID": "admin-from-config",
        "SWEEP_INTERVAL_SECONDS": 10,
        "SWEEP_BATCH_SIZE": 25,
        "SWEEP_GRACE_SECONDS": 60,
        "SWEEP_LEASE_SECONDS": 30,
    }


@pytest.fixture
def temp_config_file(tmp_path: Path, mock_config: dict[str, Any]) -> Path:
    """Создаёт временный файл конфигурации."""
    config_file = tmp_path / "config.json"
    config_file.write_text(json.dumps(mock_config, ensure_ascii=False, indent=2))
    return config_file


# =============================================================================
# ФИКСТУРЫ ИНФРАСТРУКТУРЫ (МОКИ)
# =============================================================================

@pytest.fixture
def mock_db() -> AsyncMock:
    """Мок менеджера базы данных."""
    db = AsyncMock()
    db.fetchrow = AsyncMock(return_value=None)
    db.fetch = AsyncMock(return_value=[])
    db.execute = AsyncMock(return_value="UPDATE 1")
    db.fetchval = AsyncMock(return_value=None)
    return db


@pytest.fixture
def mock_redis() -> AsyncMock:
    """Мок клиента Redis."""
    redis = AsyncMock()
    redis.get = AsyncMock(return_value=None)
    redis.set = AsyncMock(return_value=True)
    redis.delete = AsyncMock(return_value=1)
    redis.get_model = AsyncMock(return_value=None)
    redis.set_model = AsyncMock(return_value=True)
    redis.get_json = AsyncMock(return_value=None)
    redis.set_json = AsyncMock(return_value=True)
    redis.push_capped = AsyncMock(return_value=None)
    redis.range_json = AsyncMock(return_value=[])
    redis.health_check = AsyncMock(return_value=True)
    redis.is_connected = True
    return redis


@pytest.fixture
def mock_event_bus() -> AsyncMock:
    """Мок шины событий."""
    event_bus = AsyncMock()
    event_bus.publish = AsyncMock(return_value=True)
    event_bus.subscribe = AsyncMock(return_value=None)
    event_bus.health_check = AsyncMock(return_value=True)
    event_bus.is_connected = True
    return event_bus


# =============================================================================
# ФИКСТУРЫ МОДЕЛЕЙ
# =============================================================================

@pytest.fixture
def settlement_parameters() -> SettlementParameters:
    """Параметры расчёта: комиссия 15%, без сборов."""
    return SettlementParameters(
        version=3,
        commission_rate=Decimal("0.15"),
        min_payment_amount=Decimal("0"),
        max_payment_amount=Decimal("1000000"),
        supported_currencies=["IQD", "USD", "EUR"],
        updated_by="ops",
    )


@pytest.fixture
def make_payment() -> Callable[..., Payment]:
    """Фабрика платежей (сценарий A по умолчанию)."""
    def factory(**overrides: Any) -> Payment:
        data: dict[str, Any] = {
            "id": "pay-1",
            "ride_id": "ride-1",
            "captain_id": "cap-1",
            "customer_id": "cust-1",
            "received_amount": Decimal("3000.00"),
            "expected_amount": Decimal("3000.00"),
            "currency": "IQD",
            "payment_status": PaymentStatus.FULL,
            "commission_rate": Decimal("0.15"),
            "company_commission": Decimal("450.00"),
            "captain_earnings": Decimal("2550.00"),
            "processing_fee": Decimal("0.00"),
            "settings_version": 3,
            "timestamp": datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
            "created_at": datetime(2024, 5, 1, 12, 0, 1, tzinfo=timezone.utc),
        }
        data.update(overrides)
        return Payment(**data)

    return factory


@pytest.fixture
def make_payment_row(make_payment: Callable[..., Payment]) -> Callable[..., dict[str, Any]]:
    """Фабрика строк payments_schema.payments (dict вместо asyncpg.Record)."""
    def factory(**overrides: Any) -> dict[str, Any]:
        payment = make_payment()
        row = payment.model_dump(exclude={"timestamp"})
        row["payment_status"] = payment.payment_status.value
        row["payment_method"] = payment.payment_method.value
        row["collected_at"] = payment.timestamp
        row.update(overrides)
        return row

    return factory


# =============================================================================
# IN-MEMORY ХРАНИЛИЩЕ РАСЧЁТОВ
# =============================================================================

class FakeConnection:
    """Соединение транзакции: изменения копятся и применяются при commit."""

    def __init__(self) -> None:
        self._on_commit: list[Callable[[], None]] = []
        self.staged_steps: dict[str, set[str]] = {}
        self.staged_references: set[str] = set()

    def defer(self, action: Callable[[], None]) -> None:
        self._on_commit.append(action)

    def commit(self) -> None:
        for action in self._on_commit:
            action()


class FakeDatabase:
    """Фейковый DatabaseManager: транзакции выполняются по одной."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self.commits = 0
        self.rollbacks = 0

    @asynccontextmanager
    async def transaction(self, isolation: str = "read_committed") -> AsyncGenerator[FakeConnection, None]:
        async with self._lock:
            conn = FakeConnection()
            try:
                yield conn
            except BaseException:
                self.rollbacks += 1
                raise
            conn.commit()
            self.commits += 1


class FakePaymentRepository:
    """Платежи в памяти. UNIQUE(ride_id) как в БД."""

    def __init__(self) -> None:
        self.payments: dict[str, Payment] = {}
        self.fail_create: Optional[Exception] = None
        self.fail_mark_processed: Optional[Exception] = None
        self.create_calls = 0

    async def create(self, payment: Payment) -> Payment:
        self.create_calls += 1
        # Точка переключения: параллельные расчёты доходят до вставки вместе
        await asyncio.sleep(0)
        if self.fail_create is not None:
            raise self.fail_create
        if any(p.ride_id == payment.ride_id for p in self.payments.values()):
            raise StateError("PAYMENT_ALREADY_EXISTS", "Поездка уже рассчитана", {"ride_id": payment.ride_id})
        stored = payment.model_copy(update={"created_at": datetime.now(timezone.utc)})
        self.payments[stored.id] = stored
        return stored

    async def mark_step_done(self, payment_id: str, step: str, conn: FakeConnection = None) -> bool:
        payment = self.payments.get(payment_id)
        if payment is None:
            return False
        staged = conn.staged_steps.setdefault(payment_id, set())
        if step in payment.completed_steps or step in staged:
            return False
        staged.add(step)

        def apply() -> None:
            current = self.payments[payment_id]
            self.payments[payment_id] = current.model_copy(
                update={"completed_steps": [*current.completed_steps, step]}
            )

        conn.defer(apply)
        return True

    async def mark_processed(self, payment_id: str, processed_by: str, conn: Any = None) -> Optional[Payment]:
        if self.fail_mark_processed is not None:
            raise self.fail_mark_processed
        payment = self.payments.get(payment_id)
        if payment is None or payment.is_processed:
            return None
        updated = payment.model_copy(update={
            "is_processed": True,
            "processed_by": processed_by,
            "processed_at": datetime.now(timezone.utc),
        })
        self.payments[payment_id] = updated
        return updated

    async def open_dispute(self, payment_id: str, reason: str) -> Optional[Payment]:
        payment = self.payments.get(payment_id)
        if payment is None or payment.has_dispute:
            return None
        updated = payment.model_copy(update={
            "has_dispute": True,
            "dispute_reason": reason,
            "dispute_opened_at": datetime.now(timezone.utc),
            "dispute_resolved_at": None,
        })
        self.payments[payment_id] = updated
        return updated

    async def resolve_dispute(self, payment_id: str) -> Optional[Payment]:
        payment = self.payments.get(payment_id)
        if payment is None or not payment.has_dispute:
            return None
        updated = payment.model_copy(update={
            "has_dispute": False,
            "dispute_resolved_at": datetime.now(timezone.utc),
        })
        self.payments[payment_id] = updated
        return updated

    async def claim_unprocessed(self, batch_size: int, grace_seconds: int, lease_seconds: int) -> list[Payment]:
        pending = [p for p in self.payments.values() if not p.is_processed]
        return pending[:batch_size]

    async def get(self, payment_id: str) -> Optional[Payment]:
        return self.payments.get(payment_id)

    async def get_by_ride(self, ride_id: str) -> Optional[Payment]:
        return next((p for p in self.payments.values() if p.ride_id == ride_id), None)


class FakeRideRepository:
    """Поездки в памяти."""

    def __init__(self) -> None:
        self.rides: dict[str, Ride] = {}
        self.fail_update: Optional[Exception] = None

    def add(self, ride_id: str, driver_id: str = "cap-1", customer_id: Optional[str] = "cust-1",
            status: str = RideStatus.COMPLETED.value) -> Ride:
        ride = Ride(id=ride_id, driver_id=driver_id, customer_id=customer_id, status=status)
        self.rides[ride_id] = ride
        return ride

    async def find_by_id(self, ride_id: str, conn: Any = None) -> Optional[Ride]:
        return self.rides.get(ride_id)

    async def update_payment_fields(
        self,
        ride_id: str,
        payment_status: str,
        details: RidePaymentDetails,
        conn: FakeConnection = None,
    ) -> bool:
        if self.fail_update is not None:
            raise self.fail_update
        if ride_id not in self.rides:
            return False

        def apply() -> None:
            self.rides[ride_id] = self.rides[ride_id].model_copy(update={
                "payment_status": payment_status,
                "payment_details": details,
            })

        conn.defer(apply)
        return True


class FakeAccountRepository:
    """Счета в памяти. Баланс меняется только при commit."""

    def __init__(self, admin_owner_id: str = "admin-1") -> None:
        self.admin_owner_id = admin_owner_id
        self.accounts: dict[int, FinancialAccount] = {}
        self.log: list[AccountLogEntry] = []
        self.fail_admin: Optional[Exception] = None

    async def find_or_create(self, owner_id: str, role: AccountRole, currency: str,
                             conn: Any = None) -> FinancialAccount:
        for account in self.accounts.values():
            if account.owner_id == owner_id and account.role == role:
                return account
        account = FinancialAccount(id=len(self.accounts) + 1, owner_id=owner_id, role=role, currency=currency)
        self.accounts[account.id] = account
        return account

    async def find_or_create_admin_account(self, currency: str, conn: Any = None) -> FinancialAccount:
        if self.fail_admin is not None:
            raise self.fail_admin
        return await self.find_or_create(self.admin_owner_id, AccountRole.ADMIN, currency, conn=conn)

    async def increment(self, account_id: int, amount: Decimal, conn: FakeConnection = None) -> Decimal:
        def apply() -> None:
            account = self.accounts[account_id]
            self.accounts[account_id] = account.model_copy(update={"vault": account.vault + amount})

        conn.defer(apply)
        return self.accounts[account_id].vault + amount

    async def append_log_entry(self, entry: AccountLogEntry, conn: FakeConnection = None) -> int:
        conn.defer(lambda: self.log.append(entry))
        return len(self.log) + 1

    def balance(self, owner_id: str, role: AccountRole) -> Decimal:
        for account in self.accounts.values():
            if account.owner_id == owner_id and account.role == role:
                return account.vault
        return Decimal("0")


class FakeLedger:
    """Журнал переводов в памяти. reference уникален."""

    def __init__(self) -> None:
        self.transfers: dict[str, MoneyTransfer] = {}

    async def record(self, transfer: MoneyTransfer, conn: FakeConnection = None) -> Optional[MoneyTransfer]:
        if transfer.reference in self.transfers or transfer.reference in conn.staged_references:
            return None
        conn.staged_references.add(transfer.reference)
        recorded = transfer.model_copy(update={"id": len(self.transfers) + 1})
        conn.defer(lambda: self.transfers.__setitem__(transfer.reference, recorded))
        return recorded

    def of_payment(self, payment_id: str) -> list[MoneyTransfer]:
        return [t for t in self.transfers.values() if t.payment_id == payment_id]


class FakeStatsRepository:
    """Накопительная статистика профилей в памяти."""

    def __init__(self) -> None:
        self.totals: dict[str, Decimal] = {}
        self.rides: dict[str, int] = {}

    def _add(self, owner_id: str, amount: Decimal, rides_delta: int, conn: FakeConnection) -> None:
        def apply() -> None:
            self.totals[owner_id] = self.totals.get(owner_id, Decimal("0")) + amount
            self.rides[owner_id] = self.rides.get(owner_id, 0) + rides_delta

        conn.defer(apply)

    async def increment_stats(self, owner_id: str, amount: Decimal, rides_delta: int = 1,
                              conn: FakeConnection = None) -> None:
        self._add(owner_id, amount, rides_delta, conn)

    async def increment_totals(self, owner_id: str, commission: Decimal, conn: FakeConnection = None) -> None:
        self._add(owner_id, commission, 0, conn)


@dataclass
class SettlementStore:
    """Набор фейков, из которых собирается оркестратор."""
    db: FakeDatabase = field(default_factory=FakeDatabase)
    payments: FakePaymentRepository = field(default_factory=FakePaymentRepository)
    rides: FakeRideRepository = field(default_factory=FakeRideRepository)
    accounts: FakeAccountRepository = field(default_factory=FakeAccountRepository)
    ledger: FakeLedger = field(default_factory=FakeLedger)
    captains: FakeStatsRepository = field(default_factory=FakeStatsRepository)
    customers: FakeStatsRepository = field(default_factory=FakeStatsRepository)
    admins: FakeStatsRepository = field(default_factory=FakeStatsRepository)


@pytest.fixture
def store() -> SettlementStore:
    """Пустое in-memory хранилище расчётов."""
    return SettlementStore()


@pytest.fixture
def parameters_store(settlement_parameters: SettlementParameters) -> MagicMock:
    """Хранилище параметров, всегда отдающее settlement_parameters."""
    params = MagicMock()
    params.get_current = AsyncMock(return_value=settlement_parameters)
    return params


@pytest.fixture
def make_orchestrator(
    store: SettlementStore,
    parameters_store: MagicMock,
) -> Callable[..., SettlementOrchestrator]:
    """Фабрика оркестратора поверх in-memory хранилища."""
    def factory(redis: Any = None, event_bus: Any = None) -> SettlementOrchestrator:
        return SettlementOrchestrator(
            store.db,
            parameters_store,
            default_currency="IQD",
            admin_owner_id=store.accounts.admin_owner_id,
            redis=redis,
            event_bus=event_bus,
            payment_ttl=120,
            recent_payments_ttl=600,
            recent_payments_limit=20,
            payments=store.payments,
            rides=store.rides,
            accounts=store.accounts,
            ledger=store.ledger,
            captains=store.captains,
            customers=store.customers,
            admins=store.admins,
        )

    return factory
