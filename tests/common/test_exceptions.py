# tests/common/test_exceptions.py
"""
Тесты типизированных ошибок.
"""

import pytest

from ride_settlement.common.exceptions import (
    AuthorizationError,
    NotFoundError,
    PersistenceError,
    SettlementError,
    SideEffectError,
    StateError,
    ValidationError,
)


class TestSettlementErrors:
    """Коды ошибок и HTTP-статусы."""

    @pytest.mark.parametrize("error_cls, status", [
        (ValidationError, 400),
        (AuthorizationError, 403),
        (NotFoundError, 404),
        (StateError, 409),
        (PersistenceError, 503),
    ])
    def test_status_codes(self, error_cls, status) -> None:
        error = error_cls("CODE", "message")
        assert error.status_code == status
        assert isinstance(error, SettlementError)

    def test_to_dict(self) -> None:
        error = StateError("PAYMENT_ALREADY_EXISTS", "Поездка уже оплачена", {"ride_id": "ride-1"})
        assert error.to_dict() == {
            "error_code": "PAYMENT_ALREADY_EXISTS",
            "message": "Поездка уже оплачена",
            "details": {"ride_id": "ride-1"},
        }
        assert str(error) == "Поездка уже оплачена"

    def test_empty_details(self) -> None:
        error = NotFoundError("RIDE_NOT_FOUND", "Поездка не найдена")
        assert error.details == {}
        assert error.to_dict()["details"] is None

    def test_repr(self) -> None:
        assert repr(ValidationError("X", "y")) == "ValidationError('X', 'y')"


class TestSideEffectError:
    """Сбой побочного шага."""

    def test_details_carry_context(self) -> None:
        from decimal import Decimal

        error = SideEffectError(
            "commission_transferred",
            "accounts store down",
            payment_id="pay-1",
            ride_id="ride-1",
            captain_id="cap-1",
            amount=Decimal("450.00"),
        )

        assert error.error_code == "SIDE_EFFECT_FAILED"
        assert error.step == "commission_transferred"
        assert error.details == {
            "step": "commission_transferred",
            "payment_id": "pay-1",
            "ride_id": "ride-1",
            "captain_id": "cap-1",
            "amount": "450.00",
        }

    def test_amount_optional(self) -> None:
        assert SideEffectError("ride_synced", "gone").details["amount"] is None
