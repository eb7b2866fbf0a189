# ride_settlement/core/settlement/__init__.py
"""
Домен расчёта: проверка запроса, комиссия, фиксация платежа,
побочные шаги, споры, аналитика и сверка.
"""

from ride_settlement.core.settlement.models import Payment, SettlementRequest, SettlementResult
from ride_settlement.core.settlement.validator import PaymentValidator
from ride_settlement.core.settlement.orchestrator import SettlementOrchestrator
from ride_settlement.core.settlement.disputes import DisputeManager
from ride_settlement.core.settlement.analytics import AnalyticsAggregator
from ride_settlement.core.settlement.reconciliation import ReconciliationAuditor, SettlementSweeper

__all__ = [
    "Payment",
    "SettlementRequest",
    "SettlementResult",
    "PaymentValidator",
    "SettlementOrchestrator",
    "DisputeManager",
    "AnalyticsAggregator",
    "ReconciliationAuditor",
    "SettlementSweeper",
]
