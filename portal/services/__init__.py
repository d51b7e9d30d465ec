# Business Logic Services
from portal.services.scheduler import (
    get_scheduler,
    purge_verification_codes,
    start_scheduler,
    stop_scheduler,
)
from portal.services.verification import (
    ResendCooldownError,
    VerificationStorageError,
    issue_code,
    mark_code_used,
    resend_code,
    validate_code,
)

__all__ = [
    "ResendCooldownError",
    "VerificationStorageError",
    "issue_code",
    "mark_code_used",
    "resend_code",
    "validate_code",
    "get_scheduler",
    "purge_verification_codes",
    "start_scheduler",
    "stop_scheduler",
]
