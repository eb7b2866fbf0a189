# ride_settlement/core/settlement/models.py
"""
Модели данных расчёта: запрос, платёж, параметры расчёта, аналитика и сверка.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator, model_validator

from ride_settlement.common.constants import (
    AnalyticsGroupBy,
    PaymentMethod,
    PaymentStatus,
    SETTLEMENT_STEPS_ORDER,
    SettlementState,
    SettlementStep,
)
from ride_settlement.common.money import (
    MAX_STORABLE_AMOUNT,
    MONEY_QUANT,
    RATE_QUANT,
    ZERO,
    has_scale,
    round_money,
)
from ride_settlement.core.rides.models import Ride
from ride_settlement.shared.models.common import Pagination, PaginationParams


# =============================================================================
# ЗАПРОС НА РАСЧЁТ
# =============================================================================

class SettlementRequest(BaseModel):
    """
    Запрос капитана на расчёт поездки.

    Все поля необязательны на уровне схемы: наличие и бизнес-правила
    проверяет PaymentValidator, чтобы вернуть стабильный код ошибки.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    ride_id: Optional[str] = Field(None, description="ID поездки")
    captain_id: Optional[str] = Field(None, description="ID капитана (водителя)")
    received_amount: Optional[Decimal] = Field(None, description="Фактически получено")
    expected_amount: Optional[Decimal] = Field(None, description="Ожидаемая стоимость поездки")
    currency: Optional[str] = Field(None, description="Код валюты (IQD, USD, EUR)")
    payment_status: Optional[str] = Field(None, description="full или partial")
    reason: Optional[str] = Field(None, description="Причина частичной оплаты")
    payment_method: Optional[str] = Field(None, description="cash, card, wallet, other")
    notes: Optional[str] = Field(None, description="Комментарий капитана")
    timestamp: Optional[datetime] = Field(None, description="Время получения оплаты")


@dataclass(frozen=True)
class ValidatedSettlementRequest:
    """Нормализованный запрос: суммы округлены, валюта в верхнем регистре."""
    ride_id: str
    captain_id: str
    received_amount: Decimal
    expected_amount: Decimal
    currency: str
    payment_status: PaymentStatus
    payment_method: PaymentMethod
    timestamp: datetime
    reason: Optional[str] = None
    notes: Optional[str] = None


# =============================================================================
# ПЛАТЁЖ
# =============================================================================

class CommissionBreakdown(BaseModel):
    """Разбивка полученной суммы."""

    company_commission: Decimal = Field(..., description="Комиссия компании")
    captain_earnings: Decimal = Field(..., ge=0, description="Заработок капитана")
    processing_fee: Decimal = Field(ZERO, ge=0, description="Сбор за обработку")


class Payment(BaseModel):
    """
    Платёж за поездку. Один на поездку (уникальный ride_id).

    После создания меняются только статусные поля: completed_steps,
    is_processed, признаки спора.
    """

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(..., description="ID платежа")
    ride_id: str = Field(..., description="ID поездки")
    captain_id: str = Field(..., description="ID капитана")
    customer_id: Optional[str] = Field(None, description="ID клиента")

    received_amount: Decimal = Field(..., ge=0)
    expected_amount: Decimal = Field(..., gt=0)
    currency: str
    payment_status: PaymentStatus
    reason: Optional[str] = Field(None, max_length=500)
    payment_method: PaymentMethod = PaymentMethod.CASH
    notes: Optional[str] = Field(None, max_length=1000)

    commission_rate: Decimal = Field(..., ge=0, le=1)
    company_commission: Decimal
    captain_earnings: Decimal = Field(..., ge=0)
    processing_fee: Decimal = Field(ZERO, ge=0)
    settings_version: int = 0

    completed_steps: list[str] = Field(default_factory=list)
    is_processed: bool = False
    processed_at: Optional[datetime] = None
    processed_by: Optional[str] = None

    has_dispute: bool = False
    dispute_reason: Optional[str] = None
    dispute_opened_at: Optional[datetime] = None
    dispute_resolved_at: Optional[datetime] = None

    timestamp: datetime = Field(..., description="Время получения оплаты")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def amount_shortage(self) -> Decimal:
        """Недоплата (для полной оплаты ноль или меньше)."""
        return round_money(self.expected_amount - self.received_amount)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def completion_percentage(self) -> int:
        """Процент полученной суммы от ожидаемой."""
        if self.expected_amount <= 0:
            return 0
        ratio = self.received_amount / self.expected_amount * 100
        return int(ratio.quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    @property
    def pending_steps(self) -> list[SettlementStep]:
        """Побочные шаги, которые ещё не применены (в порядке выполнения)."""
        done = set(self.completed_steps)
        return [step for step in SETTLEMENT_STEPS_ORDER if step.value not in done]

    @property
    def settlement_state(self) -> SettlementState:
        """Наиболее продвинутое состояние, все предыдущие шаги которого выполнены."""
        done = set(self.completed_steps)
        if SettlementStep.RIDE_SYNCED.value not in done:
            return SettlementState.RECORDED
        if not {SettlementStep.CAPTAIN_CREDITED.value, SettlementStep.CUSTOMER_STATS.value} <= done:
            return SettlementState.RIDE_UPDATED
        if SettlementStep.COMMISSION_TRANSFERRED.value not in done:
            return SettlementState.EARNINGS_UPDATED
        return SettlementState.COMMISSION_TRANSFERRED

    @property
    def earnings(self) -> CommissionBreakdown:
        return CommissionBreakdown(
            company_commission=self.company_commission,
            captain_earnings=self.captain_earnings,
            processing_fee=self.processing_fee,
        )

    def log_context(self) -> dict[str, Any]:
        """Контекст для логов."""
        return {
            "payment_id": self.id,
            "ride_id": self.ride_id,
            "captain_id": self.captain_id,
        }

    def to_summary(self) -> dict[str, Any]:
        """Краткая сводка для кэша последних платежей."""
        return {
            "payment_id": self.id,
            "ride_id": self.ride_id,
            "captain_id": self.captain_id,
            "customer_id": self.customer_id,
            "received_amount": str(self.received_amount),
            "expected_amount": str(self.expected_amount),
            "currency": self.currency,
            "payment_status": self.payment_status.value,
            "payment_method": self.payment_method.value,
            "captain_earnings": str(self.captain_earnings),
            "company_commission": str(self.company_commission),
            "timestamp": self.timestamp.isoformat(),
        }


class SettlementResult(BaseModel):
    """Результат успешного расчёта."""

    payment: Payment
    ride: Optional[Ride] = None
    earnings: CommissionBreakdown
    settlement_state: SettlementState


# =============================================================================
# ПАРАМЕТРЫ РАСЧЁТА
# =============================================================================

class SettlementParameters(BaseModel):
    """Версионированные параметры расчёта, изменяемые оператором без деплоя."""

    version: int = Field(0, ge=0)
    commission_rate: Decimal = Field(..., ge=0, le=1)
    processing_fee_fixed: Decimal = Field(ZERO, ge=0, le=MAX_STORABLE_AMOUNT)
    processing_fee_percentage: Decimal = Field(ZERO, ge=0, le=1)
    min_payment_amount: Decimal = Field(ZERO, ge=0, le=MAX_STORABLE_AMOUNT)
    max_payment_amount: Decimal = Field(Decimal("1000000"), gt=0, le=MAX_STORABLE_AMOUNT)
    supported_currencies: list[str] = Field(default_factory=lambda: ["IQD", "USD", "EUR"])
    updated_by: Optional[str] = None
    created_at: Optional[datetime] = None

    @field_validator("supported_currencies")
    @classmethod
    def normalize_currencies(cls, v: list[str]) -> list[str]:
        codes = [code.strip().upper() for code in v if code and code.strip()]
        if not codes:
            raise ValueError("Нужна хотя бы одна поддерживаемая валюта")
        # Порядок сохраняется, дубликаты отбрасываются
        return list(dict.fromkeys(codes))

    @field_validator("commission_rate", "processing_fee_percentage")
    @classmethod
    def check_rate_scale(cls, v: Decimal) -> Decimal:
        # Колонки NUMERIC(6, 4): лишние знаки БД молча округлит
        if not has_scale(v, RATE_QUANT):
            raise ValueError("Ставка может иметь не больше 4 знаков после запятой")
        return v

    @field_validator("processing_fee_fixed", "min_payment_amount", "max_payment_amount")
    @classmethod
    def check_money_scale(cls, v: Decimal) -> Decimal:
        if not has_scale(v, MONEY_QUANT):
            raise ValueError("Сумма может иметь не больше 2 знаков после запятой")
        return v

    @model_validator(mode="after")
    def check_bounds(self) -> "SettlementParameters":
        if self.min_payment_amount > self.max_payment_amount:
            raise ValueError("min_payment_amount не может превышать max_payment_amount")
        return self


class SettlementParametersUpdate(BaseModel):
    """Частичное обновление параметров. expected_version включает оптимистичную блокировку."""

    model_config = ConfigDict(extra="forbid")

    commission_rate: Optional[Decimal] = None
    processing_fee_fixed: Optional[Decimal] = None
    processing_fee_percentage: Optional[Decimal] = None
    min_payment_amount: Optional[Decimal] = None
    max_payment_amount: Optional[Decimal] = None
    supported_currencies: Optional[list[str]] = None
    expected_version: Optional[int] = None


# =============================================================================
# АНАЛИТИКА
# =============================================================================

class CaptainPaymentStats(BaseModel):
    """Итоги по капитану за период."""

    total_payments: int = 0
    total_received: Decimal = ZERO
    total_expected: Decimal = ZERO
    total_earnings: Decimal = ZERO
    total_commission: Decimal = ZERO
    full_payments: int = 0
    partial_payments: int = 0
    average_payment: Decimal = ZERO


class PaymentHistoryFilters(PaginationParams):
    """Фильтры истории платежей капитана (страница и лимит из PaginationParams)."""

    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    payment_status: Optional[PaymentStatus] = None
    payment_method: Optional[PaymentMethod] = None


class CaptainPaymentHistory(BaseModel):
    """Страница истории платежей капитана с итогами за период."""

    payments: list[Payment] = Field(default_factory=list)
    pagination: Pagination
    stats: CaptainPaymentStats = Field(default_factory=CaptainPaymentStats)


class PaymentSeriesPoint(BaseModel):
    """Точка временного ряда аналитики."""

    period: str
    total_payments: int = 0
    total_amount: Decimal = ZERO
    total_earnings: Decimal = ZERO
    total_commission: Decimal = ZERO
    full_payments: int = 0
    partial_payments: int = 0
    average_amount: Decimal = ZERO


class OverallPaymentStats(BaseModel):
    """Общие итоги за период."""

    total_transactions: int = 0
    total_revenue: Decimal = ZERO
    total_commission: Decimal = ZERO
    average_transaction: Decimal = ZERO
    unique_captains_count: int = 0
    unique_customers_count: int = 0


class PaymentAnalytics(BaseModel):
    """Ответ аналитики: ряд и общие итоги."""

    group_by: AnalyticsGroupBy
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    series: list[PaymentSeriesPoint] = Field(default_factory=list)
    overall_stats: OverallPaymentStats = Field(default_factory=OverallPaymentStats)


# =============================================================================
# СВЕРКА
# =============================================================================

class ReconciliationReport(BaseModel):
    """Сравнение сумм по платежам с суммами в журнале переводов."""

    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    payments_count: int = 0
    unprocessed_payments: int = 0

    expected_commission: Decimal = ZERO
    recorded_commission: Decimal = ZERO
    expected_earnings: Decimal = ZERO
    recorded_earnings: Decimal = ZERO

    missing_commission_transfers: list[str] = Field(default_factory=list)
    missing_earnings_transfers: list[str] = Field(default_factory=list)

    @property
    def commission_gap(self) -> Decimal:
        return self.expected_commission - self.recorded_commission

    @property
    def earnings_gap(self) -> Decimal:
        return self.expected_earnings - self.recorded_earnings

    @property
    def is_balanced(self) -> bool:
        return (
            self.commission_gap == 0
            and self.earnings_gap == 0
            and not self.missing_commission_transfers
            and not self.missing_earnings_transfers
        )


@dataclass
class SweepResult:
    """Итог одного прохода догоняющей обработки."""
    claimed: int = 0
    completed: int = 0
    still_pending: list[str] = field(default_factory=list)
