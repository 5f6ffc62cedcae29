from src.core.audit.models import AuditLog
from src.core.audit.service import AuditService

__all__ = ["AuditLog", "AuditService"]
