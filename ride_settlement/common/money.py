# ride_settlement/common/money.py
"""
Денежная арифметика на Decimal.

Все суммы хранятся с двумя знаками после запятой, округление half-up.
Округление выполняется один раз на границе (валидатор запроса).
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

MONEY_QUANT = Decimal("0.01")
RATE_QUANT = Decimal("0.0001")
ZERO = Decimal("0.00")

# Вместимость колонок NUMERIC(14, 2)
MAX_STORABLE_AMOUNT = Decimal("999999999999.99")


def to_decimal(value: Any) -> Decimal:
    """
    Приводит значение к Decimal без потери точности.

    float переводится через str, чтобы 0.1 не превращалось в 0.1000000000000000055...

    Raises:
        ValueError: если значение не является числом
    """
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool):
        raise ValueError(f"Некорректная сумма: {value!r}")
    elif isinstance(value, (int, str)):
        try:
            result = Decimal(value)
        except InvalidOperation as e:
            raise ValueError(f"Некорректная сумма: {value!r}") from e
    elif isinstance(value, float):
        result = Decimal(str(value))
    else:
        raise ValueError(f"Некорректная сумма: {value!r}")

    if not result.is_finite():
        raise ValueError(f"Некорректная сумма: {value!r}")
    return result


def round_money(value: Any) -> Decimal:
    """
    Округляет сумму до 2 знаков (half-up). Повторное округление ничего не меняет.

    Raises:
        ValueError: если значение не число или не помещается в точность контекста
    """
    try:
        return to_decimal(value).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)
    except InvalidOperation as e:
        raise ValueError(f"Сумма вне допустимого диапазона: {value!r}") from e


def has_scale(value: Decimal, quant: Decimal) -> bool:
    """Проверяет, что у значения не больше знаков после запятой, чем у quant."""
    try:
        return value == value.quantize(quant)
    except InvalidOperation:
        return False
