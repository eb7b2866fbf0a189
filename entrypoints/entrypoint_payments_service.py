#!/usr/bin/env python3
# entrypoints/entrypoint_payments_service.py
"""
Entrypoint для HTTP API сервиса расчётов.

Запуск:
    python entrypoints/entrypoint_payments_service.py

Порт по умолчанию: 8087
"""

import sys
from pathlib import Path

# Добавляем корневую директорию проекта в путь
project_root = Path(__file__).parent.parent.resolve()
sys.path.insert(0, str(project_root))

import uvicorn

from ride_settlement.config import settings


def main() -> None:
    """Запустить сервис расчётов."""
    uvicorn.run(
        "ride_settlement.services.payments.app:app",
        host="0.0.0.0",
        port=settings.deployment.PAYMENTS_SERVICE_PORT,
        reload=settings.system.DEBUG,
        log_level=settings.system.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
