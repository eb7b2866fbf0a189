# ride_settlement/core/__init__.py
"""
Доменный слой: расчёт поездок, счета и журнал переводов.
"""
