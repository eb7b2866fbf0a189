# ride_settlement/core/settlement/commission.py
"""
Расчёт комиссии компании и заработка капитана.

Чистые функции над Decimal. Недостача покрывается компанией:
заработок капитана никогда не становится отрицательным.
"""

from __future__ import annotations

from decimal import Decimal

from ride_settlement.common.money import ZERO, round_money
from ride_settlement.core.settlement.models import CommissionBreakdown, SettlementParameters


def compute_processing_fee(
    received_amount: Decimal,
    fixed_fee: Decimal,
    percentage_fee: Decimal,
) -> Decimal:
    """processing_fee = fixed + received * percentage, округление half-up."""
    return round_money(fixed_fee + received_amount * percentage_fee)


def compute_commission(
    received_amount: Decimal,
    commission_rate: Decimal,
    processing_fee: Decimal = ZERO,
) -> CommissionBreakdown:
    """
    Делит полученную сумму между компанией и капитаном.

    Args:
        received_amount: Фактически полученная сумма
        commission_rate: Доля компании, [0, 1]
        processing_fee: Сбор за обработку, >= 0

    Returns:
        CommissionBreakdown, где
        captain_earnings + company_commission + processing_fee == received_amount,
        если received_amount покрывает комиссию и сбор, иначе captain_earnings == 0
    """
    if not ZERO <= commission_rate <= 1:
        raise ValueError(f"commission_rate вне диапазона [0, 1]: {commission_rate}")
    if processing_fee < 0:
        raise ValueError(f"processing_fee не может быть отрицательным: {processing_fee}")

    company_commission = round_money(received_amount * commission_rate)
    captain_earnings = round_money(received_amount - company_commission - processing_fee)
    if captain_earnings < 0:
        captain_earnings = ZERO

    return CommissionBreakdown(
        company_commission=company_commission,
        captain_earnings=captain_earnings,
        processing_fee=round_money(processing_fee),
    )


def compute_breakdown(received_amount: Decimal, params: SettlementParameters) -> CommissionBreakdown:
    """Полный расчёт по текущей версии параметров."""
    fee = compute_processing_fee(
        received_amount,
        params.processing_fee_fixed,
        params.processing_fee_percentage,
    )
    return compute_commission(received_amount, params.commission_rate, fee)
