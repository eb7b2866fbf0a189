# ride_settlement/core/settlement/analytics.py
"""
Аналитика платежей. Только чтение, агрегаты считает БД.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from ride_settlement.common.constants import AnalyticsGroupBy
from ride_settlement.common.exceptions import ValidationError
from ride_settlement.common.logger import log_warning
from ride_settlement.core.settlement.models import (
    CaptainPaymentHistory,
    CaptainPaymentStats,
    PaymentAnalytics,
    PaymentHistoryFilters,
)
from ride_settlement.core.settlement.orchestrator import recent_payments_key
from ride_settlement.core.settlement.repository import PaymentRepository
from ride_settlement.infra.redis_client import RedisClient
from ride_settlement.shared.models.common import Pagination


class AnalyticsAggregator:
    """Статистика капитана, история платежей и временные ряды."""

    def __init__(
        self,
        payments: PaymentRepository,
        redis: Optional[RedisClient] = None,
        recent_payments_limit: int = 50,
    ) -> None:
        self._payments = payments
        self._redis = redis
        self._recent_limit = recent_payments_limit

    async def captain_stats(
        self,
        captain_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> CaptainPaymentStats:
        """Итоги капитана за период (по времени получения оплаты)."""
        _check_period(start, end)
        return await self._payments.captain_stats(captain_id, start, end)

    async def captain_payment_history(
        self,
        captain_id: str,
        filters: PaymentHistoryFilters,
    ) -> CaptainPaymentHistory:
        """
        Страница истории платежей капитана.

        Итоги считаются за тот же период, что и фильтр, без учёта
        статуса и способа оплаты.
        """
        _check_period(filters.start_date, filters.end_date)
        payments, total = await self._payments.list_by_captain(captain_id, filters)
        stats = await self._payments.captain_stats(captain_id, filters.start_date, filters.end_date)
        return CaptainPaymentHistory(
            payments=payments,
            pagination=Pagination.create(total, filters),
            stats=stats,
        )

    async def payment_analytics(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        group_by: AnalyticsGroupBy = AnalyticsGroupBy.DAY,
    ) -> PaymentAnalytics:
        """Временной ряд и общие итоги за период."""
        _check_period(start, end)
        series = await self._payments.series(start, end, group_by)
        overall = await self._payments.overall_stats(start, end)
        return PaymentAnalytics(
            group_by=group_by,
            start_date=start,
            end_date=end,
            series=series,
            overall_stats=overall,
        )

    async def recent_payments(self, captain_id: str, limit: Optional[int] = None) -> list[dict[str, Any]]:
        """Последние платежи капитана из кэша. Без кэша список пуст."""
        if self._redis is None:
            return []
        count = min(limit or self._recent_limit, self._recent_limit)
        try:
            return await self._redis.range_json(recent_payments_key(captain_id), 0, count - 1)
        except Exception as e:
            await log_warning(
                f"Кэш последних платежей недоступен: {e}",
                extra={"captain_id": captain_id},
            )
            return []


def _check_period(start: Optional[datetime], end: Optional[datetime]) -> None:
    if start is not None and end is not None and _as_utc(start) > _as_utc(end):
        raise ValidationError(
            "INVALID_DATE_RANGE",
            "Начало периода позже конца",
            {"start_date": start.isoformat(), "end_date": end.isoformat()},
        )


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
