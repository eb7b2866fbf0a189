# ride_settlement/shared/models/common.py
"""
Общие модели API.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class PaginationParams(BaseModel):
    """Параметры пагинации."""

    page: int = Field(default=1, ge=1, description="Номер страницы")
    limit: int = Field(default=20, ge=1, le=100, description="Размер страницы")

    @property
    def offset(self) -> int:
        """Смещение для SQL-запроса."""
        return (self.page - 1) * self.limit


class Pagination(BaseModel):
    """Метаданные пагинации в ответе."""

    page: int
    limit: int
    total: int
    pages: int

    @classmethod
    def create(cls, total: int, params: PaginationParams) -> "Pagination":
        """Считает количество страниц (ceil)."""
        return cls(
            page=params.page,
            limit=params.limit,
            total=total,
            pages=(total + params.limit - 1) // params.limit,
        )


class ErrorResponse(BaseModel):
    """Стандартный ответ с ошибкой."""

    error_code: str
    message: str
    details: dict[str, Any] | None = None
    request_id: str | None = None


class HealthStatus(BaseModel):
    """Статус здоровья сервиса."""

    service: str
    status: str = "healthy"  # healthy, degraded, unhealthy
    version: str | None = None
    dependencies: dict[str, str] = Field(default_factory=dict)
