# ride_settlement/common/exceptions.py
"""
Типизированные ошибки расчёта.

Каждая ошибка несёт стабильный error_code, человекочитаемое сообщение
и словарь details. HTTP-слой отображает класс ошибки в статус ответа.
"""

from __future__ import annotations

from typing import Any


class SettlementError(Exception):
    """Базовая ошибка сервиса расчётов."""

    status_code: int = 400

    def __init__(
        self,
        error_code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Представление для ответа API."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details or None,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.error_code!r}, {self.message!r})"


class ValidationError(SettlementError):
    """Некорректный запрос. Отклоняется до любой записи."""

    status_code = 400


class NotFoundError(SettlementError):
    """Поездка или платёж не найдены."""

    status_code = 404


class AuthorizationError(SettlementError):
    """Поездка или платёж не принадлежат капитану."""

    status_code = 403


class StateError(SettlementError):
    """Недопустимое состояние: поездка не готова к оплате, уже оплачена и т.п."""

    status_code = 409


class PersistenceError(SettlementError):
    """Запись платежа не удалась. Расчёт не состоялся, запрос можно повторить."""

    status_code = 503


class SideEffectError(SettlementError):
    """
    Сбой побочного шага после фиксации платежа.

    Никогда не пробрасывается вызывающему коду: только логируется
    и подхватывается догоняющей обработкой.
    """

    status_code = 500

    def __init__(
        self,
        step: str,
        message: str,
        *,
        payment_id: str | None = None,
        ride_id: str | None = None,
        captain_id: str | None = None,
        amount: Any = None,
    ) -> None:
        super().__init__(
            error_code="SIDE_EFFECT_FAILED",
            message=message,
            details={
                "step": step,
                "payment_id": payment_id,
                "ride_id": ride_id,
                "captain_id": captain_id,
                "amount": str(amount) if amount is not None else None,
            },
        )
        self.step = step
