# ride_settlement/services/payments/__init__.py
"""
Сервис расчётов (FastAPI).
"""

from ride_settlement.services.payments.service import PaymentService

__all__ = ["PaymentService"]
