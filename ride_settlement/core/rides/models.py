# ride_settlement/core/rides/models.py
"""
Модель поездки в объёме, нужном сервису расчётов.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ride_settlement.common.constants import PAYABLE_RIDE_STATUSES


class RidePaymentDetails(BaseModel):
    """Зеркало платежа на поездке."""

    received_amount: Decimal
    expected_amount: Decimal
    currency: str
    payment_timestamp: datetime
    payment_id: str
    # Только для частичной оплаты
    reason: Optional[str] = None
    amount_shortage: Optional[Decimal] = None


class Ride(BaseModel):
    """Поездка (владелец: сервис поездок)."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(..., description="ID поездки")
    driver_id: Optional[str] = Field(None, description="ID капитана")
    customer_id: Optional[str] = Field(None, description="ID клиента")
    status: str = Field(..., description="Статус поездки")
    payment_status: Optional[str] = Field(None, description="Статус оплаты (full/partial)")
    payment_details: Optional[RidePaymentDetails] = None
    updated_at: Optional[datetime] = None

    @property
    def is_payable(self) -> bool:
        """Можно ли рассчитать поездку."""
        return self.status in PAYABLE_RIDE_STATUSES
