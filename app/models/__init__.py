from app.models.audit_log import AuditLog
from app.models.employer import Employer
from app.models.failed_job import FailedJob
from app.models.product import Product
from app.models.transaction import Transaction
from app.models.user import User
from app.models.vacancy import Vacancy
from app.models.wallet import Wallet

__all__ = [
    "AuditLog",
    "Employer",
    "FailedJob",
    "Product",
    "Transaction",
    "User",
    "Vacancy",
    "Wallet",
]
