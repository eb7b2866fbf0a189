# ride_settlement/worker/runner.py
"""
Запускалка воркеров.
"""

from __future__ import annotations

import asyncio
from typing import List

from ride_settlement.common.constants import TypeMsg
from ride_settlement.common.logger import log_error, log_info, log_warning
from ride_settlement.config import settings
from ride_settlement.infra import database, event_bus as event_bus_module, redis_client
from ride_settlement.worker.base import BaseWorker
from ride_settlement.worker.reconciliation import ReconciliationWorker


async def run_workers(init_infra: bool = True) -> None:
    """
    Запускает ReconciliationWorker.

    Args:
        init_infra: Если True, инициализирует инфраструктуру (БД, Redis, RabbitMQ).
                    В режиме all инфраструктура уже поднята в main.py.
    """
    await log_info("Запуск ReconciliationWorker...", type_msg=TypeMsg.INFO)

    if init_infra:
        await log_info("Инициализация инфраструктуры для воркеров...", type_msg=TypeMsg.DEBUG)
        await database.init_db()
        try:
            await redis_client.init_redis()
        except Exception as e:
            await log_warning(f"Redis недоступен, воркер работает без кэша: {e}")
        try:
            await event_bus_module.init_event_bus()
        except Exception as e:
            await log_warning(f"RabbitMQ недоступен, воркер работает только по таймеру: {e}")

    redis = redis_client.get_redis()
    event_bus = event_bus_module.get_event_bus()

    workers: List[BaseWorker] = [
        ReconciliationWorker(
            event_bus=event_bus if event_bus.is_connected else None,
            db=database.get_db(),
            redis=redis if redis.is_connected else None,
            settings=settings,
        ),
    ]

    try:
        for worker in workers:
            await worker.start()

        await log_info(f"Запущено {len(workers)} воркеров", type_msg=TypeMsg.INFO)

        # Ждём завершения (Ctrl+C)
        while True:
            await asyncio.sleep(1)

    except asyncio.CancelledError:
        await log_info("Получен сигнал остановки", type_msg=TypeMsg.INFO)
    except Exception as e:
        await log_error(f"Критическая ошибка: {e}", exc_info=True)
    finally:
        for worker in workers:
            await worker.stop()

        if init_infra:
            await event_bus_module.close_event_bus()
            await redis_client.close_redis()
            await database.close_db()

        await log_info("Воркеры остановлены", type_msg=TypeMsg.INFO)


def main() -> None:
    """Точка входа."""
    try:
        asyncio.run(run_workers())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
