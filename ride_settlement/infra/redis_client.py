# ride_settlement/infra/redis_client.py
"""
Клиент Redis для кэша расчётов.

Кэш необязателен: потребители обязаны переживать его отсутствие.
Хранит сводки платежей, списки последних платежей капитана и текущую
версию параметров расчёта.
"""

from __future__ import annotations

import json
from typing import Any, TypeVar, Type

import redis.asyncio as redis
from pydantic import BaseModel

from ride_settlement.common.logger import get_logger, log_error, log_info
from ride_settlement.common.constants import TypeMsg

logger = get_logger("redis")

T = TypeVar("T", bound=BaseModel)


class RedisClient:
    """
    Асинхронный клиент Redis (Singleton).

    Все ключи автоматически получают префикс пространства имён.
    """

    _instance: RedisClient | None = None
    _client: redis.Redis | None = None

    def __new__(cls) -> RedisClient:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self) -> None:
        if hasattr(self, "_initialized"):
            return
        self._initialized = True
        self._client = None
        self._namespace = "settlement"

    @property
    def client(self) -> redis.Redis:
        """Возвращает клиент Redis."""
        if self._client is None:
            raise RuntimeError("Redis клиент не инициализирован. Вызовите connect() сначала.")
        return self._client

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    def _make_key(self, key: str) -> str:
        """Добавляет namespace к ключу."""
        return f"{self._namespace}:{key}"

    async def connect(
        self,
        url: str | None = None,
        max_connections: int = 50,
        namespace: str | None = None,
    ) -> None:
        """
        Подключается к Redis.

        Args:
            url: URL Redis (если None, берётся из конфига)
            max_connections: Максимальное количество соединений
            namespace: Префикс ключей
        """
        if self._client is not None:
            return

        if url is None:
            from ride_settlement.config import settings
            url = settings.redis.url
            max_connections = settings.redis.REDIS_MAX_CONNECTIONS
            namespace = namespace or settings.redis.REDIS_NAMESPACE

        if namespace:
            self._namespace = namespace

        await log_info("Подключение к Redis...", type_msg=TypeMsg.INFO)

        client = redis.from_url(
            url,
            max_connections=max_connections,
            decode_responses=True,
        )
        try:
            await client.ping()
        except Exception:
            await client.aclose()
            raise
        self._client = client

        await log_info("Подключение к Redis установлено", type_msg=TypeMsg.INFO)

    async def disconnect(self) -> None:
        """Закрывает соединение с Redis."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            await log_info("Соединение с Redis закрыто", type_msg=TypeMsg.INFO)

    # =========================================================================
    # БАЗОВЫЕ ОПЕРАЦИИ
    # =========================================================================

    async def get(self, key: str) -> str | None:
        return await self.client.get(self._make_key(key))

    async def set(self, key: str, value: str, ttl: int | None = None) -> bool:
        """Устанавливает значение с необязательным TTL (секунды)."""
        return await self.client.set(self._make_key(key), value, ex=ttl)

    async def delete(self, key: str) -> int:
        return await self.client.delete(self._make_key(key))

    async def expire(self, key: str, ttl: int) -> bool:
        return await self.client.expire(self._make_key(key), ttl)

    # =========================================================================
    # ТИПИЗИРОВАННЫЕ ОПЕРАЦИИ (PYDANTIC)
    # =========================================================================

    async def get_model(self, key: str, model_class: Type[T]) -> T | None:
        """Получает и десериализует Pydantic модель. Битые данные считаются промахом."""
        data = await self.get(key)
        if data is None:
            return None

        try:
            return model_class.model_validate_json(data)
        except Exception as e:
            await log_error(f"Ошибка десериализации модели {model_class.__name__}: {e}")
            return None

    async def set_model(self, key: str, model: BaseModel, ttl: int | None = None) -> bool:
        """Сериализует и сохраняет Pydantic модель."""
        return await self.set(key, model.model_dump_json(), ttl=ttl)

    # =========================================================================
    # JSON ОПЕРАЦИИ
    # =========================================================================

    async def get_json(self, key: str) -> dict | list | None:
        """Получает и парсит JSON."""
        data = await self.get(key)
        if data is None:
            return None

        try:
            return json.loads(data)
        except json.JSONDecodeError:
            return None

    async def set_json(self, key: str, data: dict | list, ttl: int | None = None) -> bool:
        """Сериализует и сохраняет JSON (Decimal и datetime через str)."""
        return await self.set(key, json.dumps(data, ensure_ascii=False, default=str), ttl=ttl)

    # =========================================================================
    # СПИСКИ (последние платежи капитана)
    # =========================================================================

    async def push_capped(
        self,
        key: str,
        value: dict[str, Any],
        limit: int,
        ttl: int | None = None,
    ) -> None:
        """
        Добавляет JSON-элемент в начало списка и обрезает его до limit элементов.
        Выполняется одним пайплайном.
        """
        full_key = self._make_key(key)
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.lpush(full_key, json.dumps(value, ensure_ascii=False, default=str))
            pipe.ltrim(full_key, 0, limit - 1)
            if ttl:
                pipe.expire(full_key, ttl)
            await pipe.execute()

    async def range_json(self, key: str, start: int = 0, stop: int = -1) -> list[dict[str, Any]]:
        """Читает диапазон списка и парсит элементы как JSON, пропуская битые."""
        raw_items = await self.client.lrange(self._make_key(key), start, stop)
        items: list[dict[str, Any]] = []
        for raw in raw_items:
            try:
                items.append(json.loads(raw))
            except json.JSONDecodeError:
                continue
        return items

    # =========================================================================
    # HEALTH CHECK
    # =========================================================================

    async def health_check(self) -> bool:
        try:
            return await self.client.ping()
        except Exception as e:
            await log_error(f"Health check Redis failed: {e}")
            return False


def get_redis() -> RedisClient:
    """Возвращает глобальный экземпляр RedisClient."""
    return RedisClient()


async def init_redis() -> None:
    """Инициализирует подключение к Redis по настройкам из конфига."""
    from ride_settlement.config import settings

    redis_client = get_redis()
    await redis_client.connect(
        url=settings.redis.url,
        max_connections=settings.redis.REDIS_MAX_CONNECTIONS,
        namespace=settings.redis.REDIS_NAMESPACE,
    )
    await log_info(
        f"Redis подключён: {settings.redis.REDIS_HOST}:{settings.redis.REDIS_PORT}/{settings.redis.REDIS_DB}",
        type_msg=TypeMsg.INFO,
    )


async def close_redis() -> None:
    """Закрывает подключение к Redis."""
    redis_client = get_redis()
    await redis_client.disconnect()
    await log_info("Redis отключён", type_msg=TypeMsg.INFO)
