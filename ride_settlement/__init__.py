# ride_settlement/__init__.py
"""
Сервис расчёта оплаты поездок.

Фиксирует фактически полученную капитаном сумму, рассчитывает комиссию
и разносит начисления по счетам ровно один раз на поездку.
"""

__version__ = "0.6.0"
