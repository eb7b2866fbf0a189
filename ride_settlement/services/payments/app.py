# ride_settlement/services/payments/app.py
"""
FastAPI приложение сервиса расчётов.

Endpoints:
- POST /api/v1/payments/settle - рассчитать поездку
- GET /api/v1/payments/analytics - аналитика платежей
- GET /api/v1/payments/ride/{ride_id} - платёж поездки
- GET /api/v1/payments/{id} - получить платёж
- POST /api/v1/payments/{id}/dispute - открыть спор
- POST /api/v1/payments/{id}/dispute/resolve - закрыть спор
- PUT /api/v1/payments/{id}/process - подтвердить платёж вручную
- GET /api/v1/captains/{id}/payments - история платежей капитана
- GET /api/v1/captains/{id}/payments/stats - итоги капитана
- GET /api/v1/captains/{id}/payments/recent - последние платежи (кэш)
- GET|PATCH /api/v1/settings - параметры расчёта
- GET /api/v1/reconciliation/report - отчёт сверки
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Annotated, Any, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from ride_settlement import __version__
from ride_settlement.common.constants import AnalyticsGroupBy, PaymentMethod, PaymentStatus, TypeMsg
from ride_settlement.common.exceptions import SettlementError
from ride_settlement.common.logger import log_error, log_info, log_warning
from ride_settlement.core.settlement.models import (
    CaptainPaymentHistory,
    CaptainPaymentStats,
    Payment,
    PaymentAnalytics,
    PaymentHistoryFilters,
    SettlementParameters,
    SettlementParametersUpdate,
    SettlementRequest,
    SettlementResult,
)
from ride_settlement.services.payments.dependencies import (
    cleanup_dependencies,
    get_db,
    get_event_bus,
    get_payment_service,
    get_redis,
    init_dependencies,
)
from ride_settlement.services.payments.service import PaymentService
from ride_settlement.shared.models.common import ErrorResponse, HealthStatus

SERVICE_NAME = "payments_service"


# === REQUEST/RESPONSE MODELS ===

class DisputeRequest(BaseModel):
    """Открытие спора. captain_id указывается, если спор открывает капитан."""
    reason: Optional[str] = None
    captain_id: Optional[str] = None


class ProcessRequest(BaseModel):
    """Ручное подтверждение платежа."""
    processed_by: str = Field(..., min_length=1)


class SettingsUpdateRequest(SettlementParametersUpdate):
    """Изменение параметров расчёта с указанием оператора."""
    model_config = ConfigDict(extra="forbid")

    updated_by: str = Field(..., min_length=1)


class ReconciliationReportResponse(BaseModel):
    """Отчёт сверки с вычисленными расхождениями."""
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    payments_count: int
    unprocessed_payments: int
    expected_commission: str
    recorded_commission: str
    commission_gap: str
    expected_earnings: str
    recorded_earnings: str
    earnings_gap: str
    missing_commission_transfers: list[str]
    missing_earnings_transfers: list[str]
    is_balanced: bool


# === LIFESPAN ===

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Жизненный цикл приложения."""
    from ride_settlement.common.logger import setup_logging
    from ride_settlement.infra import database, event_bus as event_bus_module, redis_client

    setup_logging()

    # Startup: без БД сервис не работает, кэш и шина необязательны
    await database.init_db()
    db = database.get_db()

    redis = None
    try:
        await redis_client.init_redis()
        redis = redis_client.get_redis()
    except Exception as e:
        await log_warning(f"Redis недоступен, кэш отключён: {e}")

    event_bus = None
    try:
        await event_bus_module.init_event_bus()
        event_bus = event_bus_module.get_event_bus()
    except Exception as e:
        await log_warning(f"RabbitMQ недоступен, события не публикуются: {e}")

    await init_dependencies(db, redis, event_bus)
    await log_info(f"{SERVICE_NAME} запущен", type_msg=TypeMsg.INFO)

    yield

    # Shutdown
    await cleanup_dependencies()
    if event_bus is not None:
        await event_bus_module.close_event_bus()
    if redis is not None:
        await redis_client.close_redis()
    await database.close_db()


# === APP ===

app = FastAPI(
    title="Ride Settlement Service",
    description="Расчёт оплаты поездок: комиссия, заработок капитана, журнал переводов.",
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)


@app.exception_handler(SettlementError)
async def settlement_error_handler(request: Request, exc: SettlementError) -> JSONResponse:
    """Ошибки домена отдаются со стабильным error_code."""
    if exc.status_code >= 500:
        await log_error(
            f"{exc.error_code}: {exc.message}",
            extra={"path": request.url.path, **exc.details},
        )
    body = ErrorResponse(
        error_code=exc.error_code,
        message=exc.message,
        details=exc.details or None,
        request_id=request.headers.get("X-Request-Id"),
    )
    return JSONResponse(status_code=exc.status_code, content=body.model_dump(mode="json"))


# === HEALTH CHECK ===

@app.get("/health", response_model=HealthStatus, tags=["Health"])
async def health_check() -> HealthStatus:
    """Проверка здоровья сервиса и зависимостей."""
    dependencies: dict[str, str] = {}

    try:
        db_ok = await get_db().health_check()
    except RuntimeError:
        db_ok = False
    dependencies["postgres"] = "up" if db_ok else "down"

    redis = get_redis()
    dependencies["redis"] = "up" if redis is not None and await redis.health_check() else "down"

    event_bus = get_event_bus()
    dependencies["rabbitmq"] = "up" if event_bus is not None and await event_bus.health_check() else "down"

    if not db_ok:
        status = "unhealthy"
    elif "down" in dependencies.values():
        status = "degraded"
    else:
        status = "healthy"

    return HealthStatus(
        service=SERVICE_NAME,
        status=status,
        version=__version__,
        dependencies=dependencies,
    )


# === SETTLEMENT ENDPOINTS ===

@app.post(
    "/api/v1/payments/settle",
    response_model=SettlementResult,
    status_code=201,
    responses={
        400: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
    tags=["Settlement"],
    summary="Рассчитать поездку",
)
async def settle_payment(
    request: SettlementRequest,
    service: Annotated[PaymentService, Depends(get_payment_service)],
) -> SettlementResult:
    """
    Фиксирует оплату поездки и распределяет сумму.

    Повторный запрос по той же поездке возвращает 409 `PAYMENT_ALREADY_EXISTS`.
    При таймауте исход можно узнать через `GET /api/v1/payments/ride/{ride_id}`.
    """
    return await service.settle_payment(request)


@app.get(
    "/api/v1/payments/analytics",
    response_model=PaymentAnalytics,
    tags=["Analytics"],
    summary="Аналитика платежей",
)
async def get_payment_analytics(
    service: Annotated[PaymentService, Depends(get_payment_service)],
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    group_by: AnalyticsGroupBy = AnalyticsGroupBy.DAY,
) -> PaymentAnalytics:
    return await service.get_payment_analytics(start_date, end_date, group_by)


@app.get(
    "/api/v1/payments/ride/{ride_id}",
    response_model=Payment,
    responses={404: {"model": ErrorResponse}},
    tags=["Settlement"],
    summary="Платёж поездки",
)
async def get_payment_by_ride(
    ride_id: str,
    service: Annotated[PaymentService, Depends(get_payment_service)],
) -> Payment:
    return await service.get_payment_by_ride(ride_id)


@app.get(
    "/api/v1/payments/{payment_id}",
    response_model=Payment,
    responses={404: {"model": ErrorResponse}},
    tags=["Settlement"],
    summary="Получить платёж",
)
async def get_payment(
    payment_id: str,
    service: Annotated[PaymentService, Depends(get_payment_service)],
) -> Payment:
    return await service.get_payment(payment_id)


# === DISPUTES ===

@app.post(
    "/api/v1/payments/{payment_id}/dispute",
    response_model=Payment,
    responses={
        400: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
    tags=["Disputes"],
    summary="Открыть спор",
)
async def open_dispute(
    payment_id: str,
    request: DisputeRequest,
    service: Annotated[PaymentService, Depends(get_payment_service)],
) -> Payment:
    """Спор не меняет балансы."""
    return await service.open_dispute(payment_id, request.reason, captain_id=request.captain_id)


@app.post(
    "/api/v1/payments/{payment_id}/dispute/resolve",
    response_model=Payment,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    tags=["Disputes"],
    summary="Закрыть спор",
)
async def resolve_dispute(
    payment_id: str,
    service: Annotated[PaymentService, Depends(get_payment_service)],
) -> Payment:
    return await service.resolve_dispute(payment_id)


@app.put(
    "/api/v1/payments/{payment_id}/process",
    response_model=Payment,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    tags=["Disputes"],
    summary="Подтвердить платёж вручную",
)
async def mark_processed(
    payment_id: str,
    request: ProcessRequest,
    service: Annotated[PaymentService, Depends(get_payment_service)],
) -> Payment:
    return await service.mark_processed(payment_id, request.processed_by)


# === CAPTAINS ===

@app.get(
    "/api/v1/captains/{captain_id}/payments",
    response_model=CaptainPaymentHistory,
    tags=["Captains"],
    summary="История платежей капитана",
)
async def get_captain_payment_history(
    captain_id: str,
    service: Annotated[PaymentService, Depends(get_payment_service)],
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    payment_status: Optional[PaymentStatus] = None,
    payment_method: Optional[PaymentMethod] = None,
) -> CaptainPaymentHistory:
    filters = PaymentHistoryFilters(
        page=page,
        limit=limit,
        start_date=start_date,
        end_date=end_date,
        payment_status=payment_status,
        payment_method=payment_method,
    )
    return await service.get_captain_payment_history(captain_id, filters)


@app.get(
    "/api/v1/captains/{captain_id}/payments/stats",
    response_model=CaptainPaymentStats,
    tags=["Captains"],
    summary="Итоги капитана",
)
async def get_captain_stats(
    captain_id: str,
    service: Annotated[PaymentService, Depends(get_payment_service)],
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
) -> CaptainPaymentStats:
    return await service.get_captain_stats(captain_id, start_date, end_date)


@app.get(
    "/api/v1/captains/{captain_id}/payments/recent",
    tags=["Captains"],
    summary="Последние платежи капитана",
)
async def get_recent_payments(
    captain_id: str,
    service: Annotated[PaymentService, Depends(get_payment_service)],
    limit: int = Query(default=10, ge=1, le=50),
) -> list[dict[str, Any]]:
    """Читается из кэша; без кэша список пуст."""
    return await service.get_recent_payments(captain_id, limit)


# === SETTINGS ===

@app.get(
    "/api/v1/settings",
    response_model=SettlementParameters,
    tags=["Settings"],
    summary="Текущие параметры расчёта",
)
async def get_settings(
    service: Annotated[PaymentService, Depends(get_payment_service)],
) -> SettlementParameters:
    return await service.get_settings()


@app.patch(
    "/api/v1/settings",
    response_model=SettlementParameters,
    responses={400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    tags=["Settings"],
    summary="Изменить параметры расчёта",
)
async def update_settings(
    request: SettingsUpdateRequest,
    service: Annotated[PaymentService, Depends(get_payment_service)],
) -> SettlementParameters:
    """
    Сохраняет новую версию параметров.

    `expected_version` включает оптимистичную блокировку: при расхождении 409
    `SETTINGS_VERSION_CONFLICT`.
    """
    changes = SettlementParametersUpdate(**request.model_dump(exclude={"updated_by"}, exclude_unset=True))
    return await service.update_settings(changes, request.updated_by)


# === RECONCILIATION ===

@app.get(
    "/api/v1/reconciliation/report",
    response_model=ReconciliationReportResponse,
    tags=["Reconciliation"],
    summary="Отчёт сверки",
)
async def get_reconciliation_report(
    service: Annotated[PaymentService, Depends(get_payment_service)],
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
) -> ReconciliationReportResponse:
    report = await service.get_reconciliation_report(start_date, end_date)
    return ReconciliationReportResponse(
        period_start=report.period_start,
        period_end=report.period_end,
        payments_count=report.payments_count,
        unprocessed_payments=report.unprocessed_payments,
        expected_commission=str(report.expected_commission),
        recorded_commission=str(report.recorded_commission),
        commission_gap=str(report.commission_gap),
        expected_earnings=str(report.expected_earnings),
        recorded_earnings=str(report.recorded_earnings),
        earnings_gap=str(report.earnings_gap),
        missing_commission_transfers=report.missing_commission_transfers,
        missing_earnings_transfers=report.missing_earnings_transfers,
        is_balanced=report.is_balanced,
    )


# === STARTUP ===

if __name__ == "__main__":
    import uvicorn

    from ride_settlement.config import settings

    uvicorn.run(app, host="0.0.0.0", port=settings.deployment.PAYMENTS_SERVICE_PORT)
