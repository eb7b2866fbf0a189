# ride_settlement/core/settlement/reconciliation.py
"""
Догоняющая обработка и сверка.

SettlementSweeper довыполняет шаги платежей, оставшихся с is_processed = false.
ReconciliationAuditor сравнивает суммы платежей с журналом переводов.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from ride_settlement.common.constants import TransferStatus, TransferType
from ride_settlement.common.logger import log_error, log_info
from ride_settlement.core.settlement.models import ReconciliationReport, SweepResult
from ride_settlement.core.settlement.orchestrator import SettlementOrchestrator
from ride_settlement.core.settlement.repository import PaymentRepository
from ride_settlement.infra.database import DatabaseManager

PERIOD_FILTER = """
    ($1::timestamptz IS NULL OR p.collected_at >= $1)
    AND ($2::timestamptz IS NULL OR p.collected_at <= $2)
"""


class SettlementSweeper:
    """Захватывает необработанные платежи под аренду и довыполняет их шаги."""

    def __init__(
        self,
        payments: PaymentRepository,
        orchestrator: SettlementOrchestrator,
        *,
        batch_size: int = 100,
        grace_seconds: int = 300,
        lease_seconds: int = 120,
        worker_name: str = "reconciliation_worker",
    ) -> None:
        self._payments = payments
        self._orchestrator = orchestrator
        self._batch_size = batch_size
        self._grace_seconds = grace_seconds
        self._lease_seconds = lease_seconds
        self._worker_name = worker_name

    async def run_once(self) -> SweepResult:
        """Один проход: одна пачка платежей."""
        claimed = await self._payments.claim_unprocessed(
            self._batch_size,
            self._grace_seconds,
            self._lease_seconds,
        )
        result = SweepResult(claimed=len(claimed))

        for payment in claimed:
            try:
                updated = await self._orchestrator.propagate(payment, processed_by=self._worker_name)
            except Exception as e:
                await log_error(
                    f"Ошибка довыполнения платежа {payment.id}: {e}",
                    extra=payment.log_context(),
                    exc_info=True,
                )
                result.still_pending.append(payment.id)
                continue

            if updated.is_processed:
                result.completed += 1
            else:
                result.still_pending.append(payment.id)

        if result.claimed:
            await log_info(
                f"Догоняющая обработка: захвачено {result.claimed}, завершено {result.completed}",
                extra={"still_pending": result.still_pending},
            )
        return result


class ReconciliationAuditor:
    """Отчёт сверки: комиссии и заработок по платежам против журнала переводов."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def build_report(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> ReconciliationReport:
        """
        Сверяет платежи периода с переводами.

        Ожидаемые суммы берутся из платежей, записанные из completed
        переводов по этим же платежам.
        """
        totals = await self._db.fetchrow(
            f"""
            SELECT COUNT(*) AS payments_count,
                   COUNT(*) FILTER (WHERE NOT p.is_processed) AS unprocessed_payments,
                   COALESCE(SUM(p.company_commission), 0) AS expected_commission,
                   COALESCE(SUM(p.captain_earnings), 0) AS expected_earnings
            FROM payments_schema.payments p
            WHERE {PERIOD_FILTER}
            """,
            start,
            end,
        )

        recorded = await self._db.fetchrow(
            f"""
            SELECT COALESCE(SUM(t.amount) FILTER (WHERE t.transfer_type = $3), 0) AS recorded_commission,
                   COALESCE(SUM(t.amount) FILTER (WHERE t.transfer_type = $4), 0) AS recorded_earnings
            FROM payments_schema.money_transfers t
            JOIN payments_schema.payments p ON p.id = t.payment_id
            WHERE {PERIOD_FILTER}
              AND t.status = $5
            """,
            start,
            end,
            TransferType.COMMISSION.value,
            TransferType.RIDE_EARNINGS.value,
            TransferStatus.COMPLETED.value,
        )

        missing_commission = await self._missing_transfers(
            start, end, TransferType.COMMISSION, only_positive_commission=True
        )
        missing_earnings = await self._missing_transfers(start, end, TransferType.RIDE_EARNINGS)

        report = ReconciliationReport(
            period_start=start,
            period_end=end,
            payments_count=totals["payments_count"],
            unprocessed_payments=totals["unprocessed_payments"],
            expected_commission=totals["expected_commission"],
            recorded_commission=recorded["recorded_commission"],
            expected_earnings=totals["expected_earnings"],
            recorded_earnings=recorded["recorded_earnings"],
            missing_commission_transfers=missing_commission,
            missing_earnings_transfers=missing_earnings,
        )

        await log_info(
            "Отчёт сверки построен",
            extra={
                "payments_count": report.payments_count,
                "commission_gap": str(report.commission_gap),
                "earnings_gap": str(report.earnings_gap),
                "is_balanced": report.is_balanced,
            },
        )
        return report

    async def _missing_transfers(
        self,
        start: Optional[datetime],
        end: Optional[datetime],
        transfer_type: TransferType,
        only_positive_commission: bool = False,
    ) -> list[str]:
        """ID платежей периода без перевода данного типа."""
        commission_filter = "AND p.company_commission > 0" if only_positive_commission else ""
        rows = await self._db.fetch(
            f"""
            SELECT p.id
            FROM payments_schema.payments p
            WHERE {PERIOD_FILTER}
              {commission_filter}
              AND NOT EXISTS (
                  SELECT 1 FROM payments_schema.money_transfers t
                  WHERE t.payment_id = p.id AND t.transfer_type = $3
              )
            ORDER BY p.collected_at
            """,
            start,
            end,
            transfer_type.value,
        )
        return [row["id"] for row in rows]
