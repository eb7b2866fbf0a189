# ride_settlement/config/loader.py
"""
Загрузчик конфигурации проекта.
Единственный источник истины: config/config.json.
Секреты и адреса инфраструктуры переопределяются из переменных окружения.
"""

from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# =============================================================================
# ОПРЕДЕЛЕНИЕ ПУТЕЙ
# =============================================================================

def get_project_root() -> Path:
    """Возвращает корневую директорию проекта."""
    return Path(__file__).parent.parent.parent


def get_config_path() -> Path:
    """
    Возвращает путь к файлу конфигурации.
    Путь можно переопределить переменной SETTLEMENT_CONFIG_PATH.
    """
    override = os.getenv("SETTLEMENT_CONFIG_PATH")
    if override:
        return Path(override)
    return get_project_root() / "config" / "config.json"


def load_config_json() -> dict[str, Any]:
    """Загружает config.json и возвращает словарь."""
    config_path = get_config_path()
    if not config_path.exists():
        raise FileNotFoundError(f"Файл конфигурации не найден: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        return json.load(f)


# =============================================================================
# PYDANTIC МОДЕЛИ КОНФИГУРАЦИИ
# =============================================================================

class SystemSettings(BaseModel):
    """Системные настройки."""
    PROJECT_NAME: str = "ride_settlement"
    VERSION: str = "0.6.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    ENVIRONMENT: str = "development"
    RUN_DEV_MODE: bool = False
    COMPONENT_MODE: str = "api"


class DeploymentSettings(BaseModel):
    """Настройки развертывания компонентов."""
    PAYMENTS_SERVICE_HOST: str = "payments_service"
    PAYMENTS_SERVICE_PORT: int = 8087
    PAYMENTS_SERVICE_INSTANCES_COUNT: int = 1
    RECONCILIATION_WORKER_INSTANCES_COUNT: int = 1


class LoggingSettings(BaseModel):
    """Настройки логирования."""
    LOG_LEVEL: str = "INFO"
    LOG_TO_FILE: bool = True
    LOG_FILE_PATH: str = "logs/app.log"
    LOG_FORMAT: str = "colored"
    LOG_MAX_BYTES: int = 10485760
    LOG_BACKUP_COUNT: int = 5

    @field_validator("LOG_FORMAT")
    @classmethod
    def check_format(cls, v: str) -> str:
        """Допустимы только json и colored."""
        if v not in ("json", "colored"):
            raise ValueError(f"Неизвестный формат логов: {v}")
        return v


class DatabaseSettings(BaseModel):
    """Настройки PostgreSQL."""
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432
    DB_NAME: str = "ride_settlement"
    DB_USER: str = "postgres"
    DB_PASSWORD: str = ""
    DB_MIN_POOL_SIZE: int = 5
    DB_MAX_POOL_SIZE: int = 20
    DB_COMMAND_TIMEOUT: int = 60
    DB_RETRY_ATTEMPTS: int = 3
    DB_RETRY_DELAY: float = 1.0

    @field_validator("DB_PASSWORD", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        """Получает пароль из переменных окружения."""
        if not v:
            return os.getenv("DB_PASSWORD", "")
        return v

    @property
    def dsn(self) -> str:
        """Возвращает DSN для подключения к PostgreSQL."""
        return (
            f"postgresql://{self.DB_USER}:{self.DB_PASSWORD}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
        )


class RedisSettings(BaseModel):
    """Настройки Redis."""
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: str = ""
    REDIS_NAMESPACE: str = "settlement"
    REDIS_MAX_CONNECTIONS: int = 50

    @field_validator("REDIS_PASSWORD", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        """Получает пароль из переменных окружения."""
        if not v:
            return os.getenv("REDIS_PASSWORD", "")
        return v

    @property
    def url(self) -> str:
        """Возвращает URL для подключения к Redis."""
        auth = f":{self.REDIS_PASSWORD}@" if self.REDIS_PASSWORD else ""
        return f"redis://{auth}{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"


class RedisTTLSettings(BaseModel):
    """Настройки TTL кэша."""
    PAYMENT_TTL: int = 3600
    RECENT_PAYMENTS_TTL: int = 86400
    RECENT_PAYMENTS_LIMIT: int = 50
    SETTLEMENT_PARAMETERS_TTL: int = 60


class RabbitMQSettings(BaseModel):
    """Настройки RabbitMQ."""
    RABBITMQ_HOST: str = "localhost"
    RABBITMQ_PORT: int = 5672
    RABBITMQ_USER: str = "guest"
    RABBITMQ_PASSWORD: str = "guest"
    RABBITMQ_VHOST: str = "/"
    RABBITMQ_EXCHANGE: str = "settlement.events"
    RABBITMQ_PREFETCH_COUNT: int = 10

    @field_validator("RABBITMQ_PASSWORD", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        """Получает пароль из переменных окружения."""
        env_pass = os.getenv("RABBITMQ_PASSWORD", "")
        if env_pass:
            return env_pass
        return v

    @property
    def url(self) -> str:
        """Возвращает URL для подключения к RabbitMQ."""
        return (
            f"amqp://{self.RABBITMQ_USER}:{self.RABBITMQ_PASSWORD}"
            f"@{self.RABBITMQ_HOST}:{self.RABBITMQ_PORT}{self.RABBITMQ_VHOST}"
        )


class SettlementSettings(BaseModel):
    """
    Параметры расчёта по умолчанию.

    Используются как версия 0, пока оператор не сохранил свою версию
    через API настроек.
    """
    DEFAULT_COMMISSION_RATE: float = 0.15
    PROCESSING_FEE_FIXED: float = 0.0
    PROCESSING_FEE_PERCENTAGE: float = 0.0
    MIN_PAYMENT_AMOUNT: float = 0.0
    MAX_PAYMENT_AMOUNT: float = 1_000_000.0
    SUPPORTED_CURRENCIES: list[str] = Field(default_factory=lambda: ["IQD", "USD", "EUR"])
    DEFAULT_CURRENCY: str = "IQD"
    ADMIN_OWNER_ID: str = "system-admin"

    @field_validator("SUPPORTED_CURRENCIES")
    @classmethod
    def normalize_currencies(cls, v: list[str]) -> list[str]:
        """Коды валют храним в верхнем регистре."""
        return [code.upper() for code in v]

    @model_validator(mode="after")
    def check_bounds(self) -> "SettlementSettings":
        """Проверяет согласованность параметров."""
        if not 0 <= self.DEFAULT_COMMISSION_RATE <= 1:
            raise ValueError("DEFAULT_COMMISSION_RATE должен быть в диапазоне [0, 1]")
        if self.MIN_PAYMENT_AMOUNT > self.MAX_PAYMENT_AMOUNT:
            raise ValueError("MIN_PAYMENT_AMOUNT не может превышать MAX_PAYMENT_AMOUNT")
        self.DEFAULT_CURRENCY = self.DEFAULT_CURRENCY.upper()
        if self.DEFAULT_CURRENCY not in self.SUPPORTED_CURRENCIES:
            raise ValueError("DEFAULT_CURRENCY должна входить в SUPPORTED_CURRENCIES")
        return self


class ReconciliationSettings(BaseModel):
    """Настройки догоняющей обработки незавершённых расчётов."""
    SWEEP_INTERVAL_SECONDS: int = 60
    SWEEP_BATCH_SIZE: int = 100
    SWEEP_GRACE_SECONDS: int = 300
    SWEEP_LEASE_SECONDS: int = 120


# =============================================================================
# ГЛАВНЫЙ КЛАСС НАСТРОЕК
# =============================================================================

class Settings(BaseSettings):
    """
    Главный класс настроек приложения.
    Агрегирует все секции конфигурации.
    """
    system: SystemSettings = Field(default_factory=SystemSettings)
    deployment: DeploymentSettings = Field(default_factory=DeploymentSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    redis_ttl: RedisTTLSettings = Field(default_factory=RedisTTLSettings)
    rabbitmq: RabbitMQSettings = Field(default_factory=RabbitMQSettings)
    settlement: SettlementSettings = Field(default_factory=SettlementSettings)
    reconciliation: ReconciliationSettings = Field(default_factory=ReconciliationSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @classmethod
    def from_config_json(cls) -> "Settings":
        """
        Создаёт объект Settings из config.json.
        Секреты переопределяются из переменных окружения.
        """
        config_data = load_config_json()

        # Ключи _comment_* служат только для документации файла
        data = {k: v for k, v in config_data.items() if not k.startswith("_comment_")}

        return cls(
            system=SystemSettings(
                PROJECT_NAME=data.get("PROJECT_NAME", "ride_settlement"),
                VERSION=data.get("VERSION", "0.6.0"),
                DEBUG=data.get("DEBUG", False),
                LOG_LEVEL=data.get("LOG_LEVEL", "INFO"),
                ENVIRONMENT=os.getenv("ENVIRONMENT", data.get("ENVIRONMENT", "development")),
                RUN_DEV_MODE=data.get("RUN_DEV_MODE", False),
                COMPONENT_MODE=os.getenv("COMPONENT_MODE", data.get("COMPONENT_MODE", "api")),
            ),
            deployment=DeploymentSettings(
                PAYMENTS_SERVICE_HOST=os.getenv(
                    "PAYMENTS_SERVICE_HOST", data.get("PAYMENTS_SERVICE_HOST", "payments_service")
                ),
                PAYMENTS_SERVICE_PORT=int(
                    os.getenv("PAYMENTS_SERVICE_PORT", data.get("PAYMENTS_SERVICE_PORT", 8087))
                ),
                PAYMENTS_SERVICE_INSTANCES_COUNT=data.get("PAYMENTS_SERVICE_INSTANCES_COUNT", 1),
                RECONCILIATION_WORKER_INSTANCES_COUNT=data.get("RECONCILIATION_WORKER_INSTANCES_COUNT", 1),
            ),
            logging=LoggingSettings(
                LOG_LEVEL=data.get("LOG_LEVEL", "INFO"),
                LOG_TO_FILE=data.get("LOG_TO_FILE", True),
                LOG_FILE_PATH=data.get("LOG_FILE_PATH", "logs/app.log"),
                LOG_FORMAT=data.get("LOG_FORMAT", "json"),
                LOG_MAX_BYTES=data.get("LOG_MAX_BYTES", 10485760),
                LOG_BACKUP_COUNT=data.get("LOG_BACKUP_COUNT", 5),
            ),
            database=DatabaseSettings(
                DB_HOST=os.getenv("DB_HOST", data.get("DB_HOST", "localhost")),
                DB_PORT=int(os.getenv("DB_PORT", data.get("DB_PORT", 5432))),
                DB_NAME=os.getenv("DB_NAME", data.get("DB_NAME", "ride_settlement")),
                DB_USER=os.getenv("DB_USER", data.get("DB_USER", "postgres")),
                DB_PASSWORD=os.getenv("DB_PASSWORD", data.get("DB_PASSWORD", "")),
                DB_MIN_POOL_SIZE=data.get("DB_MIN_POOL_SIZE", 5),
                DB_MAX_POOL_SIZE=data.get("DB_MAX_POOL_SIZE", 20),
                DB_COMMAND_TIMEOUT=data.get("DB_COMMAND_TIMEOUT", 60),
                DB_RETRY_ATTEMPTS=data.get("DB_RETRY_ATTEMPTS", 3),
                DB_RETRY_DELAY=data.get("DB_RETRY_DELAY", 1.0),
            ),
            redis=RedisSettings(
                REDIS_HOST=os.getenv("REDIS_HOST", data.get("REDIS_HOST", "localhost")),
                REDIS_PORT=int(os.getenv("REDIS_PORT", data.get("REDIS_PORT", 6379))),
                REDIS_DB=data.get("REDIS_DB", 0),
                REDIS_PASSWORD=os.getenv("REDIS_PASSWORD", data.get("REDIS_PASSWORD", "")),
                REDIS_NAMESPACE=data.get("REDIS_NAMESPACE", "settlement"),
                REDIS_MAX_CONNECTIONS=data.get("REDIS_MAX_CONNECTIONS", 50),
            ),
            redis_ttl=RedisTTLSettings(
                PAYMENT_TTL=data.get("PAYMENT_TTL", 3600),
                RECENT_PAYMENTS_TTL=data.get("RECENT_PAYMENTS_TTL", 86400),
                RECENT_PAYMENTS_LIMIT=data.get("RECENT_PAYMENTS_LIMIT", 50),
                SETTLEMENT_PARAMETERS_TTL=data.get("SETTLEMENT_PARAMETERS_TTL", 60),
            ),
            rabbitmq=RabbitMQSettings(
                RABBITMQ_HOST=os.getenv("RABBITMQ_HOST", data.get("RABBITMQ_HOST", "localhost")),
                RABBITMQ_PORT=int(os.getenv("RABBITMQ_PORT", data.get("RABBITMQ_PORT", 5672))),
                RABBITMQ_USER=os.getenv("RABBITMQ_USER", data.get("RABBITMQ_USER", "guest")),
                RABBITMQ_PASSWORD=os.getenv("RABBITMQ_PASSWORD", data.get("RABBITMQ_PASSWORD", "guest")),
                RABBITMQ_VHOST=data.get("RABBITMQ_VHOST", "/"),
                RABBITMQ_EXCHANGE=data.get("RABBITMQ_EXCHANGE", "settlement.events"),
                RABBITMQ_PREFETCH_COUNT=data.get("RABBITMQ_PREFETCH_COUNT", 10),
            ),
            settlement=SettlementSettings(
                DEFAULT_COMMISSION_RATE=data.get("DEFAULT_COMMISSION_RATE", 0.15),
                PROCESSING_FEE_FIXED=data.get("PROCESSING_FEE_FIXED", 0.0),
                PROCESSING_FEE_PERCENTAGE=data.get("PROCESSING_FEE_PERCENTAGE", 0.0),
                MIN_PAYMENT_AMOUNT=data.get("MIN_PAYMENT_AMOUNT", 0.0),
                MAX_PAYMENT_AMOUNT=data.get("MAX_PAYMENT_AMOUNT", 1_000_000.0),
                SUPPORTED_CURRENCIES=data.get("SUPPORTED_CURRENCIES", ["IQD", "USD", "EUR"]),
                DEFAULT_CURRENCY=data.get("DEFAULT_CURRENCY", "IQD"),
                ADMIN_OWNER_ID=os.getenv("ADMIN_OWNER_ID", data.get("ADMIN_OWNER_ID", "system-admin")),
            ),
            reconciliation=ReconciliationSettings(
                SWEEP_INTERVAL_SECONDS=data.get("SWEEP_INTERVAL_SECONDS", 60),
                SWEEP_BATCH_SIZE=data.get("SWEEP_BATCH_SIZE", 100),
                SWEEP_GRACE_SECONDS=data.get("SWEEP_GRACE_SECONDS", 300),
                SWEEP_LEASE_SECONDS=data.get("SWEEP_LEASE_SECONDS", 120),
            ),
        )


@lru_cache()
def get_settings() -> Settings:
    """
    Возвращает синглтон настроек приложения.
    Перед чтением config.json подгружает .env из корня проекта.
    """
    from dotenv import load_dotenv

    env_path = get_project_root() / ".env"
    if env_path.exists():
        load_dotenv(env_path)

    return Settings.from_config_json()


# Экспорт синглтона для удобного импорта
settings = get_settings()
