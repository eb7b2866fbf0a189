# ride_settlement/core/rides/__init__.py
"""
Поездки в объёме, нужном сервису расчётов.
"""

from ride_settlement.core.rides.models import Ride, RidePaymentDetails
from ride_settlement.core.rides.repository import RideRepository

__all__ = ["Ride", "RidePaymentDetails", "RideRepository"]
