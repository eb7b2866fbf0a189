# ride_settlement/core/users/__init__.py
"""
Накопительная статистика капитанов, клиентов и компании.
"""

from ride_settlement.core.users.repository import AdminRepository, CaptainRepository, CustomerRepository

__all__ = ["AdminRepository", "CaptainRepository", "CustomerRepository"]
