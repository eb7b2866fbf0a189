# ride_settlement/common/__init__.py
"""
Общие утилиты, константы, ошибки и логгер.
"""

from ride_settlement.common.logger import get_logger, log_info, log_error, log_warning, log_debug
from ride_settlement.common.constants import TypeMsg
from ride_settlement.common.exceptions import (
    SettlementError,
    ValidationError,
    NotFoundError,
    AuthorizationError,
    StateError,
    PersistenceError,
    SideEffectError,
)

__all__ = [
    "get_logger",
    "log_info",
    "log_error",
    "log_warning",
    "log_debug",
    "TypeMsg",
    "SettlementError",
    "ValidationError",
    "NotFoundError",
    "AuthorizationError",
    "StateError",
    "PersistenceError",
    "SideEffectError",
]
