# ride_settlement/core/settlement/disputes.py
"""
Споры по платежам и ручное подтверждение обработки.

Споры никогда не меняют балансы. Каждый переход выполняется одним
условным UPDATE; если он не сработал, причина уточняется чтением.
"""

from __future__ import annotations

from typing import Optional

from ride_settlement.common.exceptions import (
    AuthorizationError,
    NotFoundError,
    StateError,
    ValidationError,
)
from ride_settlement.common.logger import log_info, log_warning
from ride_settlement.core.settlement.models import Payment
from ride_settlement.core.settlement.repository import PaymentRepository
from ride_settlement.infra.event_bus import DomainEvent, EventBus, EventTypes

MAX_DISPUTE_REASON_LENGTH = 500


class DisputeManager:
    """Открытие и закрытие споров, ручная пометка платежа обработанным."""

    def __init__(
        self,
        payments: PaymentRepository,
        event_bus: Optional[EventBus] = None,
    ) -> None:
        self._payments = payments
        self._event_bus = event_bus

    async def open_dispute(
        self,
        payment_id: str,
        reason: Optional[str],
        captain_id: Optional[str] = None,
    ) -> Payment:
        """
        Открывает спор по платежу.

        Args:
            payment_id: ID платежа
            reason: Причина спора
            captain_id: Если спор открывает капитан, платёж должен быть его

        Raises:
            ValidationError: DISPUTE_REASON_REQUIRED, DISPUTE_REASON_TOO_LONG
            NotFoundError: PAYMENT_NOT_FOUND
            AuthorizationError: PAYMENT_ACCESS_DENIED
            StateError: DISPUTE_ALREADY_OPEN
        """
        reason = reason.strip() if reason else ""
        if not reason:
            raise ValidationError("DISPUTE_REASON_REQUIRED", "Укажите причину спора")
        if len(reason) > MAX_DISPUTE_REASON_LENGTH:
            raise ValidationError(
                "DISPUTE_REASON_TOO_LONG",
                f"Причина спора не может быть длиннее {MAX_DISPUTE_REASON_LENGTH} символов",
            )

        if captain_id is not None:
            existing = await self._require_payment(payment_id)
            if existing.captain_id != captain_id:
                raise AuthorizationError(
                    "PAYMENT_ACCESS_DENIED",
                    "Платёж не принадлежит капитану",
                    {"payment_id": payment_id},
                )

        payment = await self._payments.open_dispute(payment_id, reason)
        if payment is None:
            await self._require_payment(payment_id)
            raise StateError("DISPUTE_ALREADY_OPEN", "Спор по платежу уже открыт", {"payment_id": payment_id})

        await log_info(
            f"Открыт спор по платежу {payment_id}",
            extra={**payment.log_context(), "dispute_reason": reason},
        )
        await self._publish(EventTypes.PAYMENT_DISPUTE_OPENED, {
            **payment.log_context(),
            "dispute_reason": reason,
        })
        return payment

    async def resolve_dispute(self, payment_id: str) -> Payment:
        """
        Закрывает открытый спор.

        Raises:
            NotFoundError: PAYMENT_NOT_FOUND
            StateError: DISPUTE_NOT_OPEN
        """
        payment = await self._payments.resolve_dispute(payment_id)
        if payment is None:
            await self._require_payment(payment_id)
            raise StateError("DISPUTE_NOT_OPEN", "Открытого спора по платежу нет", {"payment_id": payment_id})

        await log_info(f"Спор по платежу {payment_id} закрыт", extra=payment.log_context())
        await self._publish(EventTypes.PAYMENT_DISPUTE_RESOLVED, {
            **payment.log_context(),
            "dispute_resolved_at": payment.dispute_resolved_at,
        })
        return payment

    async def mark_processed(self, payment_id: str, processed_by: str) -> Payment:
        """
        Ручное подтверждение платежа после сверки вне системы.

        Raises:
            NotFoundError: PAYMENT_NOT_FOUND
            StateError: PAYMENT_ALREADY_PROCESSED
        """
        payment = await self._payments.mark_processed(payment_id, processed_by)
        if payment is None:
            await self._require_payment(payment_id)
            raise StateError(
                "PAYMENT_ALREADY_PROCESSED",
                "Платёж уже обработан",
                {"payment_id": payment_id},
            )

        if payment.pending_steps:
            await log_warning(
                f"Платёж {payment_id} подтверждён вручную с невыполненными шагами",
                extra={**payment.log_context(), "pending_steps": [s.value for s in payment.pending_steps]},
            )
        await log_info(
            f"Платёж {payment_id} подтверждён: {processed_by}",
            extra={**payment.log_context(), "processed_by": processed_by},
        )
        await self._publish(EventTypes.PAYMENT_PROCESSED, {
            **payment.log_context(),
            "processed_by": processed_by,
        })
        return payment

    async def _require_payment(self, payment_id: str) -> Payment:
        payment = await self._payments.get(payment_id)
        if payment is None:
            raise NotFoundError("PAYMENT_NOT_FOUND", "Платёж не найден", {"payment_id": payment_id})
        return payment

    async def _publish(self, event_type: str, payload: dict) -> None:
        if self._event_bus is None:
            return
        try:
            await self._event_bus.publish(DomainEvent(event_type=event_type, payload=payload))
        except Exception as e:
            await log_warning(f"Не удалось опубликовать {event_type}: {e}", extra={
                "payment_id": payload.get("payment_id"),
            })
