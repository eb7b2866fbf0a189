# ride_settlement/core/settlement/orchestrator.py
"""
Расчёт поездки.

Порядок:
1. Проверка запроса и поездки (без изменений состояния при отказе)
2. Вставка платежа под UNIQUE(ride_id): точка фиксации
3. Побочные шаги, каждый в своей короткой транзакции вместе с отметкой
   в completed_steps, поэтому повтор шага ничего не удваивает
4. is_processed = true, когда выполнены все шаги
5. Кэш и событие payment.settled (best-effort)

Сбой побочного шага не отменяет платёж: он логируется, а шаг
довыполняет SettlementSweeper.
"""

from __future__ import annotations

import uuid
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional

from asyncpg import Connection

from ride_settlement.common.constants import (
    AccountRole,
    PaymentStatus,
    PROCESSED_BY_SETTLEMENT,
    SettlementStep,
    TransferType,
)
from ride_settlement.common.exceptions import (
    AuthorizationError,
    NotFoundError,
    PersistenceError,
    SideEffectError,
    StateError,
)
from ride_settlement.common.logger import log_debug, log_error, log_info, log_warning
from ride_settlement.common.money import ZERO
from ride_settlement.core.accounts.ledger import LedgerRecorder
from ride_settlement.core.accounts.models import AccountLogEntry, MoneyTransfer, TransferParty
from ride_settlement.core.accounts.repository import AccountRepository
from ride_settlement.core.rides.models import Ride, RidePaymentDetails
from ride_settlement.core.rides.repository import RideRepository
from ride_settlement.core.settlement.commission import compute_breakdown
from ride_settlement.core.settlement.models import (
    CommissionBreakdown,
    Payment,
    SettlementParameters,
    SettlementRequest,
    SettlementResult,
    ValidatedSettlementRequest,
)
from ride_settlement.core.settlement.parameters import SettlementParametersStore
from ride_settlement.core.settlement.repository import PaymentRepository
from ride_settlement.core.settlement.validator import PaymentValidator
from ride_settlement.core.users.repository import (
    AdminRepository,
    CaptainRepository,
    CustomerRepository,
)
from ride_settlement.infra.database import CONNECTION_ERRORS, DatabaseManager
from ride_settlement.infra.event_bus import DomainEvent, EventBus, EventTypes
from ride_settlement.infra.redis_client import RedisClient


StepHandler = Callable[[Payment, Connection], Awaitable[None]]


def payment_cache_key(payment_id: str) -> str:
    return f"payment:{payment_id}"


def recent_payments_key(captain_id: str) -> str:
    return f"captain:{captain_id}:recent_payments"


class SettlementOrchestrator:
    """
    Расчёт поездки и довыполнение побочных шагов.

    Repositories передаются явно (тесты подставляют фейки),
    иначе создаются поверх db.
    """

    def __init__(
        self,
        db: DatabaseManager,
        parameters: SettlementParametersStore,
        *,
        default_currency: str,
        admin_owner_id: str,
        redis: Optional[RedisClient] = None,
        event_bus: Optional[EventBus] = None,
        payment_ttl: int = 3600,
        recent_payments_ttl: int = 86400,
        recent_payments_limit: int = 50,
        payments: Optional[PaymentRepository] = None,
        rides: Optional[RideRepository] = None,
        accounts: Optional[AccountRepository] = None,
        ledger: Optional[LedgerRecorder] = None,
        captains: Optional[CaptainRepository] = None,
        customers: Optional[CustomerRepository] = None,
        admins: Optional[AdminRepository] = None,
    ) -> None:
        self._db = db
        self._parameters = parameters
        self._default_currency = default_currency
        self._admin_owner_id = admin_owner_id
        self._redis = redis
        self._event_bus = event_bus
        self._payment_ttl = payment_ttl
        self._recent_ttl = recent_payments_ttl
        self._recent_limit = recent_payments_limit

        self._payments = payments or PaymentRepository(db)
        self._rides = rides or RideRepository(db)
        self._accounts = accounts or AccountRepository(db, admin_owner_id)
        self._ledger = ledger or LedgerRecorder(db)
        self._captains = captains or CaptainRepository(db)
        self._customers = customers or CustomerRepository(db)
        self._admins = admins or AdminRepository(db)

        self._step_handlers: dict[SettlementStep, StepHandler] = {
            SettlementStep.RIDE_SYNCED: self._sync_ride,
            SettlementStep.CAPTAIN_CREDITED: self._credit_captain,
            SettlementStep.CUSTOMER_STATS: self._update_customer_stats,
            SettlementStep.COMMISSION_TRANSFERRED: self._transfer_commission,
        }

    # =========================================================================
    # РАСЧЁТ
    # =========================================================================

    async def settle(self, request: SettlementRequest) -> SettlementResult:
        """
        Рассчитывает поездку.

        Raises:
            ValidationError: запрос некорректен
            NotFoundError: RIDE_NOT_FOUND
            AuthorizationError: RIDE_ACCESS_DENIED
            StateError: RIDE_NOT_PAYABLE, PAYMENT_ALREADY_EXISTS
            PersistenceError: платёж не записан, запрос можно повторить
        """
        params = await self._parameters.get_current()
        validated = PaymentValidator(params, self._default_currency).validate(request)

        ride = await self._load_payable_ride(validated)

        breakdown = compute_breakdown(validated.received_amount, params)
        payment = await self._payments.create(
            self._build_payment(validated, ride, params, breakdown)
        )
        await log_info(
            f"Платёж по поездке {payment.ride_id} записан",
            extra={
                **payment.log_context(),
                "received_amount": str(payment.received_amount),
                "captain_earnings": str(payment.captain_earnings),
                "company_commission": str(payment.company_commission),
                "settings_version": payment.settings_version,
            },
        )

        payment = await self.propagate(payment, processed_by=PROCESSED_BY_SETTLEMENT)

        await self._cache_payment(payment)
        await self._publish(EventTypes.PAYMENT_SETTLED, {
            **payment.to_summary(),
            "is_processed": payment.is_processed,
            "completed_steps": payment.completed_steps,
        })

        if not payment.is_processed:
            await log_warning(
                f"Расчёт поездки {payment.ride_id} завершён не полностью",
                extra={**payment.log_context(), "pending_steps": [s.value for s in payment.pending_steps]},
            )

        return SettlementResult(
            payment=payment,
            ride=self._mirrored_ride(ride, payment),
            earnings=payment.earnings,
            settlement_state=payment.settlement_state,
        )

    async def propagate(self, payment: Payment, processed_by: str) -> Payment:
        """
        Применяет невыполненные побочные шаги платежа.

        Шаги независимы: сбой одного не мешает остальным. Когда выполнены
        все, платёж помечается обработанным.

        Returns:
            Платёж с актуальными completed_steps и is_processed
        """
        completed = list(payment.completed_steps)
        failed: list[str] = []

        for step in payment.pending_steps:
            try:
                applied = await self._run_step(payment, step)
            except Exception as e:
                failed.append(step.value)
                error = SideEffectError(
                    step.value,
                    str(e),
                    payment_id=payment.id,
                    ride_id=payment.ride_id,
                    captain_id=payment.captain_id,
                    amount=self._step_amount(payment, step),
                )
                await log_error(
                    f"Сбой шага расчёта {step.value}: {e}",
                    extra=error.details,
                    exc_info=True,
                )
                continue

            completed.append(step.value)
            if applied:
                await log_debug(
                    f"Шаг {step.value} выполнен",
                    extra={**payment.log_context(), "step": step.value},
                )

        payment = payment.model_copy(update={"completed_steps": completed})

        if failed:
            await self._publish(EventTypes.PAYMENT_SETTLEMENT_INCOMPLETE, {
                **payment.log_context(),
                "failed_steps": failed,
            })
            return payment

        if payment.is_processed:
            return payment

        try:
            processed = await self._payments.mark_processed(payment.id, processed_by)
        except Exception as e:
            await log_error(
                f"Не удалось отметить платёж {payment.id} обработанным: {e}",
                extra=payment.log_context(),
                exc_info=True,
            )
            return payment

        if processed is not None:
            await log_info(
                f"Расчёт поездки {payment.ride_id} завершён",
                extra={**payment.log_context(), "processed_by": processed_by},
            )
            # Закэшированная копия могла остаться с is_processed = false
            await self._drop_cached_payment(payment)
            return processed
        return payment

    async def replay(self, payment_id: str, processed_by: str) -> Optional[Payment]:
        """Довыполняет расчёт платежа по ID (для воркера)."""
        payment = await self._payments.get(payment_id)
        if payment is None:
            await log_warning(f"Платёж {payment_id} для довыполнения не найден")
            return None
        if payment.is_processed:
            return payment
        return await self.propagate(payment, processed_by=processed_by)

    # =========================================================================
    # ПРОВЕРКА ПОЕЗДКИ И СБОРКА ПЛАТЕЖА
    # =========================================================================

    async def _load_payable_ride(self, validated: ValidatedSettlementRequest) -> Ride:
        try:
            ride = await self._rides.find_by_id(validated.ride_id)
        except CONNECTION_ERRORS as e:
            raise PersistenceError(
                "RIDE_LOOKUP_FAILED",
                "Не удалось получить поездку, повторите запрос",
                {"ride_id": validated.ride_id},
            ) from e

        if ride is None:
            raise NotFoundError("RIDE_NOT_FOUND", "Поездка не найдена", {"ride_id": validated.ride_id})
        if ride.driver_id != validated.captain_id:
            raise AuthorizationError(
                "RIDE_ACCESS_DENIED",
                "Поездка не принадлежит капитану",
                {"ride_id": validated.ride_id},
            )
        if not ride.is_payable:
            raise StateError(
                "RIDE_NOT_PAYABLE",
                "Поездка не готова к оплате",
                {"ride_id": ride.id, "status": ride.status},
            )
        return ride

    @staticmethod
    def _build_payment(
        validated: ValidatedSettlementRequest,
        ride: Ride,
        params: SettlementParameters,
        breakdown: CommissionBreakdown,
    ) -> Payment:
        return Payment(
            id=str(uuid.uuid4()),
            ride_id=validated.ride_id,
            captain_id=validated.captain_id,
            customer_id=ride.customer_id,
            received_amount=validated.received_amount,
            expected_amount=validated.expected_amount,
            currency=validated.currency,
            payment_status=validated.payment_status,
            reason=validated.reason,
            payment_method=validated.payment_method,
            notes=validated.notes,
            commission_rate=params.commission_rate,
            company_commission=breakdown.company_commission,
            captain_earnings=breakdown.captain_earnings,
            processing_fee=breakdown.processing_fee,
            settings_version=params.version,
            timestamp=validated.timestamp,
        )

    @staticmethod
    def _ride_details(payment: Payment) -> RidePaymentDetails:
        partial = payment.payment_status is PaymentStatus.PARTIAL
        return RidePaymentDetails(
            received_amount=payment.received_amount,
            expected_amount=payment.expected_amount,
            currency=payment.currency,
            payment_timestamp=payment.timestamp,
            payment_id=payment.id,
            reason=payment.reason if partial else None,
            amount_shortage=payment.amount_shortage if partial else None,
        )

    def _mirrored_ride(self, ride: Ride, payment: Payment) -> Ride:
        if SettlementStep.RIDE_SYNCED.value not in payment.completed_steps:
            return ride
        return ride.model_copy(update={
            "payment_status": payment.payment_status.value,
            "payment_details": self._ride_details(payment),
        })

    # =========================================================================
    # ПОБОЧНЫЕ ШАГИ
    # =========================================================================

    async def _run_step(self, payment: Payment, step: SettlementStep) -> bool:
        """
        Выполняет шаг в одной транзакции с отметкой в completed_steps.

        Returns:
            False если шаг уже был выполнен ранее (эффект не применялся)
        """
        handler = self._step_handlers[step]
        async with self._db.transaction() as conn:
            if not await self._payments.mark_step_done(payment.id, step.value, conn=conn):
                return False
            await handler(payment, conn)
        return True

    async def _sync_ride(self, payment: Payment, conn: Connection) -> None:
        updated = await self._rides.update_payment_fields(
            payment.ride_id,
            payment.payment_status.value,
            self._ride_details(payment),
            conn=conn,
        )
        if not updated:
            raise NotFoundError("RIDE_NOT_FOUND", f"Поездка {payment.ride_id} не найдена")

    async def _credit_captain(self, payment: Payment, conn: Connection) -> None:
        captain_account = await self._accounts.find_or_create(
            payment.captain_id, AccountRole.DRIVER, payment.currency, conn=conn
        )
        if payment.customer_id:
            source = await self._accounts.find_or_create(
                payment.customer_id, AccountRole.CUSTOMER, payment.currency, conn=conn
            )
        else:
            # Клиент неизвестен: наличные получены самим капитаном
            source = captain_account

        transfer = await self._ledger.record(
            MoneyTransfer(
                reference=MoneyTransfer.make_reference(payment.id, TransferType.RIDE_EARNINGS),
                payment_id=payment.id,
                ride_id=payment.ride_id,
                from_party=TransferParty(account_id=source.id, role=source.role),
                to_party=TransferParty(account_id=captain_account.id, role=AccountRole.DRIVER),
                amount=payment.captain_earnings,
                currency=payment.currency,
                transfer_type=TransferType.RIDE_EARNINGS,
            ),
            conn=conn,
        )
        if transfer is None:
            return

        await self._accounts.increment(captain_account.id, payment.captain_earnings, conn=conn)
        await self._accounts.append_log_entry(
            AccountLogEntry(
                account_id=captain_account.id,
                amount=payment.captain_earnings,
                description=f"Заработок за поездку {payment.ride_id}",
                transfer_id=transfer.id,
                ride_id=payment.ride_id,
                captain_id=payment.captain_id,
            ),
            conn=conn,
        )
        await self._captains.increment_stats(
            payment.captain_id, payment.captain_earnings, rides_delta=1, conn=conn
        )

    async def _update_customer_stats(self, payment: Payment, conn: Connection) -> None:
        if not payment.customer_id:
            return
        await self._customers.increment_stats(
            payment.customer_id, payment.received_amount, rides_delta=1, conn=conn
        )

    async def _transfer_commission(self, payment: Payment, conn: Connection) -> None:
        if payment.company_commission <= ZERO:
            return

        admin_account = await self._accounts.find_or_create_admin_account(payment.currency, conn=conn)
        captain_account = await self._accounts.find_or_create(
            payment.captain_id, AccountRole.DRIVER, payment.currency, conn=conn
        )

        transfer = await self._ledger.record(
            MoneyTransfer(
                reference=MoneyTransfer.make_reference(payment.id, TransferType.COMMISSION),
                payment_id=payment.id,
                ride_id=payment.ride_id,
                from_party=TransferParty(account_id=captain_account.id, role=AccountRole.DRIVER),
                to_party=TransferParty(account_id=admin_account.id, role=AccountRole.ADMIN),
                amount=payment.company_commission,
                currency=payment.currency,
                transfer_type=TransferType.COMMISSION,
            ),
            conn=conn,
        )
        if transfer is None:
            return

        # Счёт капитана не списывается: наличные получены вне платформы
        await self._accounts.increment(admin_account.id, payment.company_commission, conn=conn)
        await self._accounts.append_log_entry(
            AccountLogEntry(
                account_id=admin_account.id,
                amount=payment.company_commission,
                description=f"Комиссия за поездку {payment.ride_id} от капитана {payment.captain_id}",
                transfer_id=transfer.id,
                ride_id=payment.ride_id,
                captain_id=payment.captain_id,
            ),
            conn=conn,
        )
        await self._admins.increment_totals(self._admin_owner_id, payment.company_commission, conn=conn)

    @staticmethod
    def _step_amount(payment: Payment, step: SettlementStep) -> Optional[Decimal]:
        match step:
            case SettlementStep.CAPTAIN_CREDITED:
                return payment.captain_earnings
            case SettlementStep.CUSTOMER_STATS:
                return payment.received_amount
            case SettlementStep.COMMISSION_TRANSFERRED:
                return payment.company_commission
            case _:
                return None

    # =========================================================================
    # КЭШ И СОБЫТИЯ
    # =========================================================================

    async def _cache_payment(self, payment: Payment) -> None:
        """Кэширует платёж и список последних платежей капитана. Сбой не критичен."""
        if self._redis is None:
            await log_debug("Кэш не настроен, платёж не кэшируется", extra=payment.log_context())
            return

        try:
            await self._redis.set_json(
                payment_cache_key(payment.id),
                payment.model_dump(mode="json"),
                ttl=self._payment_ttl,
            )
            await self._redis.push_capped(
                recent_payments_key(payment.captain_id),
                payment.to_summary(),
                limit=self._recent_limit,
                ttl=self._recent_ttl,
            )
        except Exception as e:
            await log_warning(f"Не удалось закэшировать платёж: {e}", extra=payment.log_context())

    async def _drop_cached_payment(self, payment: Payment) -> None:
        if self._redis is None:
            return
        try:
            await self._redis.delete(payment_cache_key(payment.id))
        except Exception as e:
            await log_warning(f"Не удалось сбросить кэш платежа: {e}", extra=payment.log_context())

    async def _publish(self, event_type: str, payload: dict[str, Any]) -> None:
        if self._event_bus is None:
            return
        try:
            await self._event_bus.publish(DomainEvent(event_type=event_type, payload=payload))
        except Exception as e:
            await log_warning(f"Не удалось опубликовать {event_type}: {e}", extra={
                "payment_id": payload.get("payment_id"),
                "ride_id": payload.get("ride_id"),
            })

