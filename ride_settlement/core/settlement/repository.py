# ride_settlement/core/settlement/repository.py
"""
Репозиторий платежей.

Уникальность платежа на поездку обеспечивает ограничение
payments_ride_id_key в БД, а не проверка перед вставкой.
Все переходы состояния выполняются одним условным UPDATE.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

import asyncpg
from asyncpg import Connection, Record

from ride_settlement.common.constants import AnalyticsGroupBy, PaymentMethod, PaymentStatus
from ride_settlement.common.exceptions import PersistenceError, StateError
from ride_settlement.common.logger import log_error
from ride_settlement.core.settlement.models import (
    CaptainPaymentStats,
    OverallPaymentStats,
    Payment,
    PaymentHistoryFilters,
    PaymentSeriesPoint,
)
from ride_settlement.infra.database import CONNECTION_ERRORS, DatabaseManager

PAYMENT_COLUMNS = """
    id, ride_id, captain_id, customer_id, received_amount, expected_amount,
    currency, payment_status, reason, payment_method, notes,
    commission_rate, company_commission, captain_earnings, processing_fee,
    settings_version, completed_steps, is_processed, processed_at, processed_by,
    has_dispute, dispute_reason, dispute_opened_at, dispute_resolved_at,
    collected_at, created_at, updated_at
"""

# Формат периода для to_char
PERIOD_FORMATS: dict[AnalyticsGroupBy, str] = {
    AnalyticsGroupBy.DAY: "YYYY-MM-DD",
    AnalyticsGroupBy.WEEK: 'IYYY-"W"IW',
    AnalyticsGroupBy.MONTH: "YYYY-MM",
}


class PaymentRepository:
    """Хранилище платежей payments_schema.payments."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    # =========================================================================
    # ЗАПИСЬ
    # =========================================================================

    async def create(self, payment: Payment) -> Payment:
        """
        Вставляет платёж. Точка фиксации расчёта.

        Raises:
            StateError: PAYMENT_ALREADY_EXISTS, если поездка уже рассчитана
            PersistenceError: при любой другой ошибке БД (запрос можно повторить)
        """
        try:
            row = await self._db.fetchrow(
                f"""
                INSERT INTO payments_schema.payments (
                    id, ride_id, captain_id, customer_id, received_amount, expected_amount,
                    currency, payment_status, reason, payment_method, notes,
                    commission_rate, company_commission, captain_earnings, processing_fee,
                    settings_version, collected_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, $17)
                RETURNING {PAYMENT_COLUMNS}
                """,
                payment.id,
                payment.ride_id,
                payment.captain_id,
                payment.customer_id,
                payment.received_amount,
                payment.expected_amount,
                payment.currency,
                payment.payment_status.value,
                payment.reason,
                payment.payment_method.value,
                payment.notes,
                payment.commission_rate,
                payment.company_commission,
                payment.captain_earnings,
                payment.processing_fee,
                payment.settings_version,
                payment.timestamp,
            )
        except asyncpg.UniqueViolationError:
            raise StateError(
                "PAYMENT_ALREADY_EXISTS",
                "Поездка уже рассчитана",
                {"ride_id": payment.ride_id},
            ) from None
        except (asyncpg.PostgresError, *CONNECTION_ERRORS) as e:
            await log_error(
                f"Ошибка записи платежа: {e}",
                extra=payment.log_context(),
                exc_info=True,
            )
            raise PersistenceError(
                "PAYMENT_PERSISTENCE_FAILED",
                "Не удалось сохранить платёж, повторите запрос",
                {"ride_id": payment.ride_id},
            ) from e
        return _row_to_payment(row)

    async def mark_step_done(
        self,
        payment_id: str,
        step: str,
        conn: Optional[Connection] = None,
    ) -> bool:
        """
        Отмечает шаг выполненным, если он ещё не отмечен.

        Вызывается внутри транзакции шага до применения эффекта: строка
        платежа блокируется до конца транзакции, поэтому параллельный
        повтор того же шага дождётся её и получит False.

        Returns:
            True если шаг отмечен сейчас, False если он уже был выполнен
        """
        executor = conn or self._db
        marked = await executor.fetchval(
            """
            UPDATE payments_schema.payments
            SET completed_steps = array_append(completed_steps, $2::text),
                updated_at = NOW()
            WHERE id = $1 AND NOT ($2::text = ANY(completed_steps))
            RETURNING id
            """,
            payment_id,
            step,
        )
        return marked is not None

    async def mark_processed(
        self,
        payment_id: str,
        processed_by: str,
        conn: Optional[Connection] = None,
    ) -> Optional[Payment]:
        """
        Переводит платёж в is_processed = true.

        Returns:
            Обновлённый платёж, None если платежа нет или он уже обработан
        """
        executor = conn or self._db
        row = await executor.fetchrow(
            f"""
            UPDATE payments_schema.payments
            SET is_processed = TRUE,
                processed_at = NOW(),
                processed_by = $2,
                lease_until = NULL,
                updated_at = NOW()
            WHERE id = $1 AND is_processed = FALSE
            RETURNING {PAYMENT_COLUMNS}
            """,
            payment_id,
            processed_by,
        )
        return _row_to_payment(row) if row else None

    async def open_dispute(self, payment_id: str, reason: str) -> Optional[Payment]:
        """Открывает спор. None, если платежа нет или спор уже открыт."""
        row = await self._db.fetchrow(
            f"""
            UPDATE payments_schema.payments
            SET has_dispute = TRUE,
                dispute_reason = $2,
                dispute_opened_at = NOW(),
                dispute_resolved_at = NULL,
                updated_at = NOW()
            WHERE id = $1 AND has_dispute = FALSE
            RETURNING {PAYMENT_COLUMNS}
            """,
            payment_id,
            reason,
        )
        return _row_to_payment(row) if row else None

    async def resolve_dispute(self, payment_id: str) -> Optional[Payment]:
        """Закрывает спор. None, если платежа нет или открытого спора нет."""
        row = await self._db.fetchrow(
            f"""
            UPDATE payments_schema.payments
            SET has_dispute = FALSE,
                dispute_resolved_at = NOW(),
                updated_at = NOW()
            WHERE id = $1 AND has_dispute = TRUE
            RETURNING {PAYMENT_COLUMNS}
            """,
            payment_id,
        )
        return _row_to_payment(row) if row else None

    async def claim_unprocessed(
        self,
        batch_size: int,
        grace_seconds: int,
        lease_seconds: int,
    ) -> list[Payment]:
        """
        Захватывает пачку необработанных платежей под аренду.

        Один оператор: SKIP LOCKED отсекает строки, которые захватывает
        другой экземпляр, а lease_until не даёт взять их повторно,
        пока аренда не истекла. Блокировка не удерживается между await.
        """
        rows = await self._db.fetch(
            f"""
            UPDATE payments_schema.payments
            SET lease_until = NOW() + make_interval(secs => $3)
            WHERE id IN (
                SELECT id
                FROM payments_schema.payments
                WHERE is_processed = FALSE
                  AND created_at < NOW() - make_interval(secs => $2)
                  AND (lease_until IS NULL OR lease_until < NOW())
                ORDER BY created_at
                LIMIT $1
                FOR UPDATE SKIP LOCKED
            )
            RETURNING {PAYMENT_COLUMNS}
            """,
            batch_size,
            float(grace_seconds),
            float(lease_seconds),
        )
        return [_row_to_payment(row) for row in rows]

    # =========================================================================
    # ЧТЕНИЕ
    # =========================================================================

    async def get(self, payment_id: str) -> Optional[Payment]:
        row = await self._db.fetchrow(
            f"SELECT {PAYMENT_COLUMNS} FROM payments_schema.payments WHERE id = $1",
            payment_id,
        )
        return _row_to_payment(row) if row else None

    async def get_by_ride(self, ride_id: str) -> Optional[Payment]:
        """Платёж поездки: так клиент узнаёт исход запроса после таймаута."""
        row = await self._db.fetchrow(
            f"SELECT {PAYMENT_COLUMNS} FROM payments_schema.payments WHERE ride_id = $1",
            ride_id,
        )
        return _row_to_payment(row) if row else None

    async def list_by_captain(
        self,
        captain_id: str,
        filters: PaymentHistoryFilters,
    ) -> tuple[list[Payment], int]:
        """
        Страница истории платежей капитана, новые сверху.

        Returns:
            (платежи страницы, всего платежей по фильтру)
        """
        where, args = _history_where(captain_id, filters)
        total = await self._db.fetchval(
            f"SELECT COUNT(*) FROM payments_schema.payments WHERE {where}",
            *args,
        )

        rows = await self._db.fetch(
            f"""
            SELECT {PAYMENT_COLUMNS}
            FROM payments_schema.payments
            WHERE {where}
            ORDER BY collected_at DESC
            LIMIT ${len(args) + 1} OFFSET ${len(args) + 2}
            """,
            *args,
            filters.limit,
            filters.offset,
        )
        return [_row_to_payment(row) for row in rows], int(total or 0)

    # =========================================================================
    # АГРЕГАТЫ
    # =========================================================================

    async def captain_stats(
        self,
        captain_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> CaptainPaymentStats:
        row = await self._db.fetchrow(
            """
            SELECT COUNT(*) AS total_payments,
                   COALESCE(SUM(received_amount), 0) AS total_received,
                   COALESCE(SUM(expected_amount), 0) AS total_expected,
                   COALESCE(SUM(captain_earnings), 0) AS total_earnings,
                   COALESCE(SUM(company_commission), 0) AS total_commission,
                   COUNT(*) FILTER (WHERE payment_status = 'full') AS full_payments,
                   COUNT(*) FILTER (WHERE payment_status = 'partial') AS partial_payments,
                   COALESCE(ROUND(AVG(received_amount), 2), 0) AS average_payment
            FROM payments_schema.payments
            WHERE captain_id = $1
              AND ($2::timestamptz IS NULL OR collected_at >= $2)
              AND ($3::timestamptz IS NULL OR collected_at <= $3)
            """,
            captain_id,
            start,
            end,
        )
        return CaptainPaymentStats(**dict(row)) if row else CaptainPaymentStats()

    async def series(
        self,
        start: Optional[datetime],
        end: Optional[datetime],
        group_by: AnalyticsGroupBy,
    ) -> list[PaymentSeriesPoint]:
        """Временной ряд по периодам, по возрастанию."""
        rows = await self._db.fetch(
            """
            SELECT to_char(collected_at AT TIME ZONE 'UTC', $3) AS period,
                   COUNT(*) AS total_payments,
                   COALESCE(SUM(received_amount), 0) AS total_amount,
                   COALESCE(SUM(captain_earnings), 0) AS total_earnings,
                   COALESCE(SUM(company_commission), 0) AS total_commission,
                   COUNT(*) FILTER (WHERE payment_status = 'full') AS full_payments,
                   COUNT(*) FILTER (WHERE payment_status = 'partial') AS partial_payments,
                   ROUND(AVG(received_amount), 2) AS average_amount
            FROM payments_schema.payments
            WHERE ($1::timestamptz IS NULL OR collected_at >= $1)
              AND ($2::timestamptz IS NULL OR collected_at <= $2)
            GROUP BY period
            ORDER BY period
            """,
            start,
            end,
            PERIOD_FORMATS[group_by],
        )
        return [PaymentSeriesPoint(**dict(row)) for row in rows]

    async def overall_stats(
        self,
        start: Optional[datetime],
        end: Optional[datetime],
    ) -> OverallPaymentStats:
        row = await self._db.fetchrow(
            """
            SELECT COUNT(*) AS total_transactions,
                   COALESCE(SUM(received_amount), 0) AS total_revenue,
                   COALESCE(SUM(company_commission), 0) AS total_commission,
                   COALESCE(ROUND(AVG(received_amount), 2), 0) AS average_transaction,
                   COUNT(DISTINCT captain_id) AS unique_captains_count,
                   COUNT(DISTINCT customer_id) AS unique_customers_count
            FROM payments_schema.payments
            WHERE ($1::timestamptz IS NULL OR collected_at >= $1)
              AND ($2::timestamptz IS NULL OR collected_at <= $2)
            """,
            start,
            end,
        )
        return OverallPaymentStats(**dict(row)) if row else OverallPaymentStats()


def _history_where(captain_id: str, filters: PaymentHistoryFilters) -> tuple[str, list[Any]]:
    """Собирает WHERE истории с позиционными параметрами."""
    clauses = ["captain_id = $1"]
    args: list[Any] = [captain_id]

    if filters.start_date is not None:
        args.append(filters.start_date)
        clauses.append(f"collected_at >= ${len(args)}")
    if filters.end_date is not None:
        args.append(filters.end_date)
        clauses.append(f"collected_at <= ${len(args)}")
    if filters.payment_status is not None:
        args.append(filters.payment_status.value)
        clauses.append(f"payment_status = ${len(args)}")
    if filters.payment_method is not None:
        args.append(filters.payment_method.value)
        clauses.append(f"payment_method = ${len(args)}")

    return " AND ".join(clauses), args


def _row_to_payment(row: Record) -> Payment:
    return Payment(
        id=row["id"],
        ride_id=row["ride_id"],
        captain_id=row["captain_id"],
        customer_id=row["customer_id"],
        received_amount=row["received_amount"],
        expected_amount=row["expected_amount"],
        currency=row["currency"],
        payment_status=PaymentStatus(row["payment_status"]),
        reason=row["reason"],
        payment_method=PaymentMethod(row["payment_method"]),
        notes=row["notes"],
        commission_rate=row["commission_rate"],
        company_commission=row["company_commission"],
        captain_earnings=row["captain_earnings"],
        processing_fee=row["processing_fee"],
        settings_version=row["settings_version"],
        completed_steps=list(row["completed_steps"] or []),
        is_processed=row["is_processed"],
        processed_at=row["processed_at"],
        processed_by=row["processed_by"],
        has_dispute=row["has_dispute"],
        dispute_reason=row["dispute_reason"],
        dispute_opened_at=row["dispute_opened_at"],
        dispute_resolved_at=row["dispute_resolved_at"],
        timestamp=row["collected_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )
