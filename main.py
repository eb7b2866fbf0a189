#!/usr/bin/env python3
# main.py
"""
Главная точка входа сервиса расчётов.
Запускает HTTP API, ReconciliationWorker или оба компонента в зависимости от аргументов.
"""

from __future__ import annotations

import asyncio
import signal
import sys

from ride_settlement.config import settings
from ride_settlement.common.logger import setup_logging, log_info, log_error, log_warning
from ride_settlement.common.constants import TypeMsg
from ride_settlement.infra.database import init_db, close_db
from ride_settlement.infra.redis_client import init_redis, close_redis
from ride_settlement.infra.event_bus import init_event_bus, close_event_bus


VALID_MODES = ("api", "worker", "all")

# Глобальный флаг для graceful shutdown
_shutdown_event: asyncio.Event | None = None
_running_tasks: list[asyncio.Task] = []


def setup_signal_handlers() -> None:
    """Настраивает обработчики сигналов для graceful shutdown."""
    global _shutdown_event
    _shutdown_event = asyncio.Event()

    def signal_handler(sig: int) -> None:
        """Обработчик сигналов SIGINT и SIGTERM."""
        if _shutdown_event and not _shutdown_event.is_set():
            print(f"\nПолучен сигнал остановки (sig={sig}), завершаем работу...")
            _shutdown_event.set()
            for task in _running_tasks:
                if not task.done():
                    task.cancel()

    try:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
    except NotImplementedError:
        # Windows не поддерживает add_signal_handler
        signal.signal(signal.SIGINT, lambda s, f: signal_handler(s))
        signal.signal(signal.SIGTERM, lambda s, f: signal_handler(s))


async def init_infrastructure() -> None:
    """
    Инициализирует подключения к инфраструктуре.
    PostgreSQL обязателен, Redis и RabbitMQ нет.
    """
    await log_info("Инициализация инфраструктуры...", type_msg=TypeMsg.INFO)

    await init_db()
    await log_info("PostgreSQL подключён", type_msg=TypeMsg.DEBUG)

    try:
        await init_redis()
        await log_info("Redis подключён", type_msg=TypeMsg.DEBUG)
    except Exception as e:
        await log_warning(f"Redis недоступен, работаем без кэша: {e}")

    try:
        await init_event_bus()
        await log_info("RabbitMQ подключён", type_msg=TypeMsg.DEBUG)
    except Exception as e:
        await log_warning(f"RabbitMQ недоступен, события не публикуются: {e}")

    await log_info("Инфраструктура инициализирована", type_msg=TypeMsg.INFO)


async def close_infrastructure() -> None:
    """Закрывает все подключения."""
    await log_info("Закрытие подключений...", type_msg=TypeMsg.INFO)

    await close_event_bus()
    await close_redis()
    await close_db()

    await log_info("Подключения закрыты", type_msg=TypeMsg.INFO)


async def run_api() -> None:
    """Запускает HTTP API сервиса расчётов."""
    import uvicorn

    await log_info(
        f"Запуск Ride Settlement API на порту {settings.deployment.PAYMENTS_SERVICE_PORT}...",
        type_msg=TypeMsg.INFO,
    )

    config = uvicorn.Config(
        "ride_settlement.services.payments.app:app",
        host="0.0.0.0",
        port=settings.deployment.PAYMENTS_SERVICE_PORT,
        reload=settings.system.DEBUG,
        log_level="debug" if settings.system.DEBUG else "info",
    )

    server = uvicorn.Server(config)
    try:
        await server.serve()
    except asyncio.CancelledError:
        await log_info("Ride Settlement API: graceful shutdown", type_msg=TypeMsg.DEBUG)
        await server.shutdown()


async def run_reconciliation_worker(init_infra: bool = True) -> None:
    """Запускает ReconciliationWorker (догоняющая обработка платежей)."""
    from ride_settlement.worker.runner import run_workers

    await run_workers(init_infra=init_infra)


async def main(mode: str | None = None) -> None:
    """
    Главная функция запуска.

    Args:
        mode: Режим запуска (api, worker, all).
              Если None, берётся из COMPONENT_MODE или RUN_DEV_MODE.
    """
    global _running_tasks

    setup_logging()
    setup_signal_handlers()

    if mode is None:
        if settings.system.RUN_DEV_MODE:
            mode = "all"
            await log_info("🔧 RUN_DEV_MODE включен - запуск всех компонентов", type_msg=TypeMsg.INFO)
        elif settings.system.COMPONENT_MODE in VALID_MODES:
            mode = settings.system.COMPONENT_MODE
            await log_info(f"🐳 Docker режим - запуск компонента '{mode}'", type_msg=TypeMsg.INFO)
        else:
            mode = "api"

    await log_info(
        f"Ride Settlement v{settings.system.VERSION} - запуск в режиме '{mode}'",
        type_msg=TypeMsg.INFO,
    )

    try:
        if mode == "api":
            # Инфраструктуру поднимает lifespan приложения
            await run_api()
        elif mode == "worker":
            await run_reconciliation_worker(init_infra=True)
        elif mode == "all":
            await init_infrastructure()
            _running_tasks = [
                asyncio.create_task(run_api()),
                asyncio.create_task(run_reconciliation_worker(init_infra=False)),
            ]
            try:
                await asyncio.gather(*_running_tasks, return_exceptions=True)
            except asyncio.CancelledError:
                await log_info("Отмена всех задач...", type_msg=TypeMsg.INFO)
                for task in _running_tasks:
                    if not task.done():
                        task.cancel()
                await asyncio.gather(*_running_tasks, return_exceptions=True)
                raise
            finally:
                await close_infrastructure()
        else:
            await log_error(f"Неизвестный режим: {mode}")
            sys.exit(1)

    except asyncio.CancelledError:
        await log_info("Приложение остановлено", type_msg=TypeMsg.INFO)
    except Exception as e:
        await log_error(f"Критическая ошибка: {e}", exc_info=True)
        raise


def print_usage() -> None:
    """Выводит справку по использованию."""
    print("""
Ride Settlement - сервис расчёта оплаты поездок

Использование:
    python main.py [mode]

Режимы:
    api       - HTTP API (:8087)
    worker    - ReconciliationWorker (догоняющая обработка)
    all       - API и воркер в одном процессе

Примеры:
    python main.py            # Режим из COMPONENT_MODE
    python main.py worker     # Только воркер
    """)


if __name__ == "__main__":
    mode = None

    if len(sys.argv) > 1:
        arg = sys.argv[1].lower()
        if arg in ("--help", "-h"):
            print_usage()
            sys.exit(0)
        elif arg in VALID_MODES:
            mode = arg
        else:
            print(f"Ошибка: неизвестный режим '{arg}'")
            print_usage()
            sys.exit(1)

    try:
        asyncio.run(main(mode))
    except KeyboardInterrupt:
        pass
