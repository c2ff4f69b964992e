"""ORM models. Importing this package registers every table on Base.metadata."""
from app.models.access_request import AccessRequest
from app.models.audit_log import AuditLog
from app.models.company import Company
from app.models.generation import Generation
from app.models.legacy_id_map import LegacyIdMap
from app.models.transaction import Transaction
from app.models.user import User

__all__ = [
    "AccessRequest",
    "AuditLog",
    "Company",
    "Generation",
    "LegacyIdMap",
    "Transaction",
    "User",
]
