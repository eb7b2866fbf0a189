# ride_settlement/worker/reconciliation.py
"""
Воркер догоняющей обработки расчётов.

Периодически захватывает платежи с is_processed = false и довыполняет
их шаги. Дополнительно реагирует на payment.settlement_incomplete.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, List, Optional

from ride_settlement.common.constants import TypeMsg
from ride_settlement.common.logger import log_error, log_info, log_warning
from ride_settlement.core.settlement.models import SweepResult
from ride_settlement.infra.event_bus import DomainEvent, EventTypes
from ride_settlement.services.payments.service import PaymentService
from ride_settlement.worker.base import BaseWorker

if TYPE_CHECKING:
    from ride_settlement.config.loader import Settings


class ReconciliationWorker(BaseWorker):
    """Довыполнение незавершённых расчётов."""

    def __init__(
        self,
        *args,
        settings: "Settings",
        service: Optional[PaymentService] = None,
        **kwargs,
    ) -> None:
        super().__init__(*args, **kwargs)
        self._interval = settings.reconciliation.SWEEP_INTERVAL_SECONDS
        self.service = service or PaymentService(
            db=self.db,
            redis=self.redis,
            event_bus=self.event_bus,
            settings=settings,
            worker_name=self.name,
        )

    @property
    def name(self) -> str:
        return "ReconciliationWorker"

    @property
    def subscriptions(self) -> List[str]:
        return [EventTypes.PAYMENT_SETTLEMENT_INCOMPLETE]

    async def start(self) -> None:
        """Подписки плюс периодический проход."""
        await super().start()
        self._spawn(self._sweep_loop())

    async def handle_event(self, event: DomainEvent) -> None:
        payment_id = event.payload.get("payment_id")
        if not payment_id:
            await log_warning(
                f"Событие {event.event_type} без payment_id",
                extra={"event_id": event.event_id},
            )
            return

        payment = await self.service.orchestrator.replay(payment_id, processed_by=self.name)
        if payment is not None and payment.is_processed:
            await log_info(
                f"Расчёт платежа {payment_id} довыполнен по событию",
                extra=payment.log_context(),
            )

    async def sweep_once(self) -> SweepResult:
        return await self.service.sweeper.run_once()

    async def _sweep_loop(self) -> None:
        await log_info(
            f"Догоняющая обработка каждые {self._interval} с",
            type_msg=TypeMsg.DEBUG,
        )
        while self._running:
            try:
                await self.sweep_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                await log_error(f"Ошибка догоняющей обработки: {e}", exc_info=True)
            await asyncio.sleep(self._interval)
