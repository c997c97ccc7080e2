from app.models.user import UserAccount
from app.models.verification_token import VerificationToken
from app.models.audit_log import AuditLog
from app.models.failed_job import FailedJob

__all__ = [
    "UserAccount",
    "VerificationToken",
    "AuditLog",
    "FailedJob",
]
