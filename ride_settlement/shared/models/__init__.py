# ride_settlement/shared/models/__init__.py
"""
Общие модели API.
"""

from ride_settlement.shared.models.common import (
    ErrorResponse,
    HealthStatus,
    Pagination,
    PaginationParams,
)

__all__ = ["ErrorResponse", "HealthStatus", "Pagination", "PaginationParams"]
