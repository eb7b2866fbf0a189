# ride_settlement/services/payments/service.py
"""
Фасад сервиса расчётов для HTTP-слоя и воркеров.
Собирает доменные компоненты поверх общей инфраструктуры.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional

from ride_settlement.common.exceptions import NotFoundError
from ride_settlement.common.logger import log_warning
from ride_settlement.common.constants import AnalyticsGroupBy
from ride_settlement.core.accounts.ledger import LedgerRecorder
from ride_settlement.core.accounts.repository import AccountRepository
from ride_settlement.core.settlement.analytics import AnalyticsAggregator
from ride_settlement.core.settlement.disputes import DisputeManager
from ride_settlement.core.settlement.models import (
    CaptainPaymentHistory,
    CaptainPaymentStats,
    Payment,
    PaymentAnalytics,
    PaymentHistoryFilters,
    ReconciliationReport,
    SettlementParameters,
    SettlementParametersUpdate,
    SettlementRequest,
    SettlementResult,
)
from ride_settlement.core.settlement.orchestrator import SettlementOrchestrator, payment_cache_key
from ride_settlement.core.settlement.parameters import SettlementParametersStore, defaults_from_config
from ride_settlement.core.settlement.reconciliation import ReconciliationAuditor, SettlementSweeper
from ride_settlement.core.settlement.repository import PaymentRepository

if TYPE_CHECKING:
    from ride_settlement.config.loader import Settings
    from ride_settlement.infra.database import DatabaseManager
    from ride_settlement.infra.event_bus import EventBus
    from ride_settlement.infra.redis_client import RedisClient


class PaymentService:
    """
    Сервис расчётов.

    Ответственности:
    - Расчёт поездки и довыполнение побочных шагов
    - Споры и ручное подтверждение
    - Аналитика и сверка
    - Параметры расчёта
    """

    def __init__(
        self,
        db: "DatabaseManager",
        redis: Optional["RedisClient"],
        event_bus: Optional["EventBus"],
        settings: "Settings",
        worker_name: str = "reconciliation_worker",
    ) -> None:
        self.db = db
        self.redis = redis
        self.event_bus = event_bus
        self.settings = settings

        ttl = settings.redis_ttl
        settlement = settings.settlement
        reconciliation = settings.reconciliation

        self.payments = PaymentRepository(db)
        self.parameters = SettlementParametersStore(
            db,
            defaults_from_config(settlement),
            redis=redis,
            event_bus=event_bus,
            cache_ttl=ttl.SETTLEMENT_PARAMETERS_TTL,
        )
        self.orchestrator = SettlementOrchestrator(
            db,
            self.parameters,
            default_currency=settlement.DEFAULT_CURRENCY,
            admin_owner_id=settlement.ADMIN_OWNER_ID,
            redis=redis,
            event_bus=event_bus,
            payment_ttl=ttl.PAYMENT_TTL,
            recent_payments_ttl=ttl.RECENT_PAYMENTS_TTL,
            recent_payments_limit=ttl.RECENT_PAYMENTS_LIMIT,
            payments=self.payments,
            accounts=AccountRepository(db, settlement.ADMIN_OWNER_ID),
            ledger=LedgerRecorder(db),
        )
        self.disputes = DisputeManager(self.payments, event_bus=event_bus)
        self.analytics = AnalyticsAggregator(
            self.payments,
            redis=redis,
            recent_payments_limit=ttl.RECENT_PAYMENTS_LIMIT,
        )
        self.auditor = ReconciliationAuditor(db)
        self.sweeper = SettlementSweeper(
            self.payments,
            self.orchestrator,
            batch_size=reconciliation.SWEEP_BATCH_SIZE,
            grace_seconds=reconciliation.SWEEP_GRACE_SECONDS,
            lease_seconds=reconciliation.SWEEP_LEASE_SECONDS,
            worker_name=worker_name,
        )

    # === РАСЧЁТ ===

    async def settle_payment(self, request: SettlementRequest) -> SettlementResult:
        return await self.orchestrator.settle(request)

    async def get_payment(self, payment_id: str) -> Payment:
        """Платёж по ID: кэш, затем БД."""
        cached = await self._read_cached_payment(payment_id)
        if cached is not None:
            return cached

        payment = await self.payments.get(payment_id)
        if payment is None:
            raise NotFoundError("PAYMENT_NOT_FOUND", "Платёж не найден", {"payment_id": payment_id})
        return payment

    async def get_payment_by_ride(self, ride_id: str) -> Payment:
        """По этому запросу клиент узнаёт исход расчёта после таймаута."""
        payment = await self.payments.get_by_ride(ride_id)
        if payment is None:
            raise NotFoundError("PAYMENT_NOT_FOUND", "Платёж по поездке не найден", {"ride_id": ride_id})
        return payment

    # === СПОРЫ И ПОДТВЕРЖДЕНИЕ ===

    async def open_dispute(
        self,
        payment_id: str,
        reason: Optional[str],
        captain_id: Optional[str] = None,
    ) -> Payment:
        payment = await self.disputes.open_dispute(payment_id, reason, captain_id=captain_id)
        await self._invalidate_cached_payment(payment_id)
        return payment

    async def resolve_dispute(self, payment_id: str) -> Payment:
        payment = await self.disputes.resolve_dispute(payment_id)
        await self._invalidate_cached_payment(payment_id)
        return payment

    async def mark_processed(self, payment_id: str, processed_by: str) -> Payment:
        payment = await self.disputes.mark_processed(payment_id, processed_by)
        await self._invalidate_cached_payment(payment_id)
        return payment

    # === АНАЛИТИКА ===

    async def get_captain_payment_history(
        self,
        captain_id: str,
        filters: PaymentHistoryFilters,
    ) -> CaptainPaymentHistory:
        return await self.analytics.captain_payment_history(captain_id, filters)

    async def get_captain_stats(
        self,
        captain_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> CaptainPaymentStats:
        return await self.analytics.captain_stats(captain_id, start, end)

    async def get_recent_payments(self, captain_id: str, limit: Optional[int] = None) -> list[dict[str, Any]]:
        return await self.analytics.recent_payments(captain_id, limit)

    async def get_payment_analytics(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        group_by: AnalyticsGroupBy = AnalyticsGroupBy.DAY,
    ) -> PaymentAnalytics:
        return await self.analytics.payment_analytics(start, end, group_by)

    async def get_reconciliation_report(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> ReconciliationReport:
        return await self.auditor.build_report(start, end)

    # === ПАРАМЕТРЫ РАСЧЁТА ===

    async def get_settings(self) -> SettlementParameters:
        return await self.parameters.get_current()

    async def update_settings(
        self,
        changes: SettlementParametersUpdate,
        updated_by: str,
    ) -> SettlementParameters:
        return await self.parameters.update(changes, updated_by)

    # === КЭШ ===

    async def _read_cached_payment(self, payment_id: str) -> Optional[Payment]:
        if self.redis is None:
            return None
        try:
            return await self.redis.get_model(payment_cache_key(payment_id), Payment)
        except Exception as e:
            await log_warning(f"Кэш платежей недоступен: {e}", extra={"payment_id": payment_id})
            return None

    async def _invalidate_cached_payment(self, payment_id: str) -> None:
        if self.redis is None:
            return
        try:
            await self.redis.delete(payment_cache_key(payment_id))
        except Exception as e:
            await log_warning(f"Не удалось сбросить кэш платежа: {e}", extra={"payment_id": payment_id})
