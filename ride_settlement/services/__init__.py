# ride_settlement/services/__init__.py
"""
HTTP-сервисы.

- payments: расчёт поездок, споры, аналитика, параметры расчёта, сверка
"""

__all__: list[str] = []
