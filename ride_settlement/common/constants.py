# ride_settlement/common/constants.py
"""
Общие константы и перечисления.
"""

from enum import Enum


class TypeMsg(str, Enum):
    """Типы сообщений для логирования."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class PaymentStatus(str, Enum):
    """Статус оплаты поездки (полная или частичная)."""
    FULL = "full"
    PARTIAL = "partial"


class PaymentMethod(str, Enum):
    """Способы оплаты."""
    CASH = "cash"
    CARD = "card"
    WALLET = "wallet"
    OTHER = "other"


class RideStatus(str, Enum):
    """Статусы поездки, которые видит сервис расчётов."""
    REQUESTED = "requested"
    ACCEPTED = "accepted"
    ARRIVED = "arrived"
    ON_RIDE = "onRide"
    AWAITING_PAYMENT = "awaiting_payment"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Поездку можно оплатить только в этих статусах
PAYABLE_RIDE_STATUSES: frozenset[str] = frozenset({
    RideStatus.COMPLETED.value,
    RideStatus.AWAITING_PAYMENT.value,
})


class AccountRole(str, Enum):
    """Владелец финансового счёта."""
    DRIVER = "driver"
    CUSTOMER = "customer"
    ADMIN = "admin"


class TransferType(str, Enum):
    """Типы денежных переводов в журнале."""
    RIDE_EARNINGS = "customer-to-driver"
    COMMISSION = "driver-to-admin"


class TransferStatus(str, Enum):
    """Статусы денежного перевода."""
    COMPLETED = "completed"
    PENDING = "pending"
    FAILED = "failed"


class SettlementStep(str, Enum):
    """Побочные шаги расчёта после фиксации платежа (в порядке выполнения)."""
    RIDE_SYNCED = "ride_synced"
    CAPTAIN_CREDITED = "captain_credited"
    CUSTOMER_STATS = "customer_stats"
    COMMISSION_TRANSFERRED = "commission_transferred"


SETTLEMENT_STEPS_ORDER: tuple[SettlementStep, ...] = (
    SettlementStep.RIDE_SYNCED,
    SettlementStep.CAPTAIN_CREDITED,
    SettlementStep.CUSTOMER_STATS,
    SettlementStep.COMMISSION_TRANSFERRED,
)


class SettlementState(str, Enum):
    """Состояние расчёта поездки."""
    UNSETTLED = "unsettled"
    RECORDED = "recorded"
    RIDE_UPDATED = "ride_updated"
    EARNINGS_UPDATED = "earnings_updated"
    COMMISSION_TRANSFERRED = "commission_transferred"


class AnalyticsGroupBy(str, Enum):
    """Гранулярность временного ряда аналитики."""
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


# Кто проставляет is_processed при автоматическом завершении расчёта
PROCESSED_BY_SETTLEMENT = "settlement"
