# ride_settlement/worker/__init__.py
"""
Фоновые воркеры: догоняющая обработка расчётов.
"""

from ride_settlement.worker.base import BaseWorker
from ride_settlement.worker.reconciliation import ReconciliationWorker

__all__ = ["BaseWorker", "ReconciliationWorker"]
