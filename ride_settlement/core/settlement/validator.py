# ride_settlement/core/settlement/validator.py
"""
Проверка запроса на расчёт.

Правила проверяются по порядку, срабатывает первое нарушение.
Каждому нарушению соответствует стабильный код ошибки.
Округление сумм выполняется здесь, один раз.
"""

from __future__ import annotations

from datetime import datetime, timezone

from ride_settlement.common.constants import PaymentMethod, PaymentStatus
from ride_settlement.common.exceptions import ValidationError
from ride_settlement.common.money import MAX_STORABLE_AMOUNT, round_money
from ride_settlement.core.settlement.models import (
    SettlementParameters,
    SettlementRequest,
    ValidatedSettlementRequest,
)

MAX_REASON_LENGTH = 500
MAX_NOTES_LENGTH = 1000


class PaymentValidator:
    """Проверяет запрос по текущей версии параметров расчёта."""

    def __init__(self, params: SettlementParameters, default_currency: str) -> None:
        self._params = params
        self._default_currency = default_currency.upper()

    def validate(self, request: SettlementRequest) -> ValidatedSettlementRequest:
        """
        Проверяет запрос и возвращает нормализованную копию.

        Raises:
            ValidationError: при первом нарушенном правиле
        """
        # 1. Обязательные поля (ноль допустим для received_amount)
        if not request.ride_id:
            raise ValidationError("RIDE_ID_REQUIRED", "Не указан ID поездки")
        if not request.captain_id:
            raise ValidationError("CAPTAIN_ID_REQUIRED", "Не указан ID капитана")
        if request.received_amount is None:
            raise ValidationError("RECEIVED_AMOUNT_REQUIRED", "Не указана полученная сумма")
        if request.expected_amount is None:
            raise ValidationError("EXPECTED_AMOUNT_REQUIRED", "Не указана ожидаемая сумма")
        if not request.payment_status:
            raise ValidationError("PAYMENT_STATUS_REQUIRED", "Не указан статус оплаты")
        if request.timestamp is None:
            raise ValidationError("TIMESTAMP_REQUIRED", "Не указано время оплаты")

        # 2. Границы суммы (огромные значения отсекаются до округления)
        if request.received_amount.copy_abs() > MAX_STORABLE_AMOUNT:
            if request.received_amount < 0:
                raise ValidationError(
                    "AMOUNT_BELOW_MINIMUM",
                    f"Сумма меньше минимальной ({self._params.min_payment_amount})",
                    {"min": str(self._params.min_payment_amount)},
                )
            raise ValidationError(
                "AMOUNT_ABOVE_MAXIMUM",
                f"Сумма превышает максимальную ({self._params.max_payment_amount})",
                {"max": str(self._params.max_payment_amount)},
            )

        received = round_money(request.received_amount)
        if received < self._params.min_payment_amount:
            raise ValidationError(
                "AMOUNT_BELOW_MINIMUM",
                f"Сумма меньше минимальной ({self._params.min_payment_amount})",
                {"received_amount": str(received), "min": str(self._params.min_payment_amount)},
            )
        if received > self._params.max_payment_amount:
            raise ValidationError(
                "AMOUNT_ABOVE_MAXIMUM",
                f"Сумма превышает максимальную ({self._params.max_payment_amount})",
                {"received_amount": str(received), "max": str(self._params.max_payment_amount)},
            )

        # 3. Ожидаемая сумма (проверяется и до, и после округления)
        if request.expected_amount <= 0:
            raise ValidationError("INVALID_EXPECTED_AMOUNT", "Ожидаемая сумма должна быть больше нуля")
        if request.expected_amount > MAX_STORABLE_AMOUNT:
            expected = None
        else:
            expected = round_money(request.expected_amount)
        if expected is None or expected > MAX_STORABLE_AMOUNT:
            raise ValidationError(
                "EXPECTED_AMOUNT_TOO_LARGE",
                f"Ожидаемая сумма не может превышать {MAX_STORABLE_AMOUNT}",
                {"max": str(MAX_STORABLE_AMOUNT)},
            )
        if expected <= 0:
            raise ValidationError("INVALID_EXPECTED_AMOUNT", "Ожидаемая сумма должна быть больше нуля")

        # 4. Валюта
        currency = self._resolve_currency(request.currency)

        # 5. Статус оплаты
        try:
            payment_status = PaymentStatus(request.payment_status.lower())
        except ValueError:
            raise ValidationError(
                "INVALID_PAYMENT_STATUS",
                "Статус оплаты должен быть full или partial",
                {"payment_status": request.payment_status},
            ) from None

        reason = request.reason.strip() if request.reason else None

        # 6. Частичная оплата
        if payment_status is PaymentStatus.PARTIAL:
            if not reason:
                raise ValidationError("PARTIAL_REASON_REQUIRED", "Для частичной оплаты нужна причина")
            if len(reason) > MAX_REASON_LENGTH:
                raise ValidationError(
                    "PARTIAL_REASON_TOO_LONG",
                    f"Причина не может быть длиннее {MAX_REASON_LENGTH} символов",
                )
            if received >= expected:
                raise ValidationError(
                    "PARTIAL_AMOUNT_NOT_LESS",
                    "При частичной оплате полученная сумма должна быть меньше ожидаемой",
                    {"received_amount": str(received), "expected_amount": str(expected)},
                )

        # 7. Полная оплата
        if payment_status is PaymentStatus.FULL:
            if received < expected:
                raise ValidationError(
                    "FULL_AMOUNT_BELOW_EXPECTED",
                    "При полной оплате полученная сумма не может быть меньше ожидаемой",
                    {"received_amount": str(received), "expected_amount": str(expected)},
                )
            # Причина хранится только для частичной оплаты
            reason = None

        payment_method = self._resolve_method(request.payment_method)

        notes = request.notes.strip() if request.notes else None
        if notes and len(notes) > MAX_NOTES_LENGTH:
            raise ValidationError(
                "NOTES_TOO_LONG",
                f"Комментарий не может быть длиннее {MAX_NOTES_LENGTH} символов",
            )

        return ValidatedSettlementRequest(
            ride_id=request.ride_id,
            captain_id=request.captain_id,
            received_amount=received,
            expected_amount=expected,
            currency=currency,
            payment_status=payment_status,
            payment_method=payment_method,
            timestamp=_as_utc(request.timestamp),
            reason=reason,
            notes=notes or None,
        )

    def _resolve_currency(self, currency: str | None) -> str:
        if not currency:
            return self._default_currency
        code = currency.upper()
        if code not in self._params.supported_currencies:
            raise ValidationError(
                "UNSUPPORTED_CURRENCY",
                f"Валюта {code} не поддерживается",
                {"supported": self._params.supported_currencies},
            )
        return code

    @staticmethod
    def _resolve_method(method: str | None) -> PaymentMethod:
        if not method:
            return PaymentMethod.CASH
        try:
            return PaymentMethod(method.lower())
        except ValueError:
            raise ValidationError(
                "INVALID_PAYMENT_METHOD",
                "Способ оплаты должен быть cash, card, wallet или other",
                {"payment_method": method},
            ) from None


def _as_utc(value: datetime) -> datetime:
    """Время без зоны считается UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
