# ride_settlement/worker/base.py
"""
Базовый класс для воркеров.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Coroutine, List, Optional

from ride_settlement.common.constants import TypeMsg
from ride_settlement.common.logger import log_error, log_info, log_warning
from ride_settlement.infra.database import DatabaseManager, get_db
from ride_settlement.infra.event_bus import DomainEvent, EventBus
from ride_settlement.infra.redis_client import RedisClient


class BaseWorker(ABC):
    """
    Базовый класс для всех воркеров.
    Подписывается на события и запускает фоновые задачи.
    """

    def __init__(
        self,
        event_bus: Optional[EventBus] = None,
        db: Optional[DatabaseManager] = None,
        redis: Optional[RedisClient] = None,
    ) -> None:
        """
        Инициализирует воркер.

        Args:
            event_bus: Шина событий (без неё воркер работает только по таймеру)
            db: Менеджер БД
            redis: Redis клиент
        """
        self.event_bus = event_bus
        self.db = db or get_db()
        self.redis = redis
        self._running = False
        self._tasks: List[asyncio.Task] = []

    @property
    @abstractmethod
    def name(self) -> str:
        """Имя воркера."""

    @property
    @abstractmethod
    def subscriptions(self) -> List[str]:
        """Список типов событий для подписки."""

    @abstractmethod
    async def handle_event(self, event: DomainEvent) -> None:
        """Обрабатывает событие."""

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Запускает воркер."""
        if self._running:
            return

        self._running = True
        await log_info(f"Воркер {self.name} запускается...", type_msg=TypeMsg.INFO)

        if self.event_bus is None:
            await log_warning(f"Воркер {self.name} запущен без шины событий")
        else:
            for event_type in self.subscriptions:
                await self.event_bus.subscribe(
                    event_type=event_type,
                    handler=self._on_event,
                )
                await log_info(
                    f"Воркер {self.name} подписан на {event_type}",
                    type_msg=TypeMsg.DEBUG,
                )

        await log_info(f"Воркер {self.name} запущен", type_msg=TypeMsg.INFO)

    async def stop(self) -> None:
        """Останавливает воркер и отменяет фоновые задачи."""
        if not self._running:
            return

        self._running = False

        for task in self._tasks:
            task.cancel()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        self._tasks.clear()
        await log_info(f"Воркер {self.name} остановлен", type_msg=TypeMsg.INFO)

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        """Запускает фоновую задачу, которая отменится при stop()."""
        task = asyncio.create_task(coro)
        self._tasks.append(task)
        return task

    async def _on_event(self, event: DomainEvent) -> None:
        if not self._running:
            return

        try:
            await log_info(
                f"Воркер {self.name} получил событие {event.event_type}",
                type_msg=TypeMsg.DEBUG,
            )
            await self.handle_event(event)
        except Exception as e:
            await log_error(
                f"Ошибка в воркере {self.name}: {e}",
                extra={"event_type": event.event_type, "payload": event.payload},
                exc_info=True,
            )
