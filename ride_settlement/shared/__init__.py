# ride_settlement/shared/__init__.py
"""
Общие модели, используемые несколькими слоями.
"""
