"""Error taxonomy for history migrations.

Errors fall into two groups. Validation-style errors (``ValidationError`` and
its subclasses, ``BackupIntegrityError``, ``TransactionAlreadyActive``) are
raised before anything in the repository changes. Everything raised while a
transaction is executing (``ExecutionError``, ``ConflictUnresolved``,
``OperationCancelled``) is caught by the transaction manager and rolled back.
``RollbackVerificationError`` and ``RollbackFailed`` are fatal: the repository
needs manual inspection.
"""

from datetime import datetime
from typing import Any, Dict, Optional


class HistofyError(Exception):
    """Base class for all histofy errors."""

    code = "HISTOFY_ERROR"

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}
        self.timestamp = datetime.now().isoformat()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp,
        }


class ValidationError(HistofyError):
    """Malformed range, date, time or plan; rejected before any mutation."""

    code = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        suggestion: Optional[str] = None,
    ):
        super().__init__(message, {"field": field, "suggestion": suggestion})
        self.field = field
        self.suggestion = suggestion


class InvalidRange(ValidationError):
    code = "INVALID_RANGE"

    def __init__(self, message: str, suggestion: Optional[str] = None):
        super().__init__(
            message,
            field="commit_range",
            suggestion=suggestion
            or 'Provide a commit hash or an ordered range (e.g. "HEAD~5..HEAD")',
        )


class NoCommitsFound(ValidationError):
    code = "NO_COMMITS_FOUND"

    def __init__(self, range_spec: str):
        super().__init__(
            f"No commits found in the specified range: {range_spec}",
            field="commit_range",
            suggestion="Verify the commit range exists and contains commits",
        )


class BackupIntegrityError(HistofyError):
    """The backup ref could not be verified; the transaction never opened."""

    code = "BACKUP_INTEGRITY_ERROR"


class TransactionAlreadyActive(HistofyError):
    code = "TRANSACTION_ALREADY_ACTIVE"


class TransactionStateError(HistofyError):
    """A transaction operation was requested from the wrong state."""

    code = "TRANSACTION_STATE_ERROR"


class ExecutionError(HistofyError):
    """A strategy step failed."""

    code = "EXECUTION_ERROR"

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        partial_result: Any = None,
    ):
        super().__init__(message, context)
        self.partial_result = partial_result


class VCSError(ExecutionError):
    """A git command failed at the backend boundary."""

    code = "VCS_ERROR"


class MigrationTimeout(ExecutionError):
    code = "MIGRATION_TIMEOUT"


class ConflictUnresolved(HistofyError):
    """A resolution policy did not clear every conflict."""

    code = "CONFLICT_UNRESOLVED"

    def __init__(self, message: str, report: Any = None):
        super().__init__(message)
        self.report = report


class OperationCancelled(HistofyError):
    code = "OPERATION_CANCELLED"


class RollbackVerificationError(HistofyError):
    """The branch did not match the backup after a hard reset."""

    code = "ROLLBACK_VERIFICATION_ERROR"


class RollbackFailed(HistofyError):
    """Execution failed and the automatic rollback failed too."""

    code = "ROLLBACK_FAILED"

    def __init__(self, original: BaseException, rollback_error: BaseException):
        super().__init__(
            f"{original}; rollback also failed: {rollback_error}",
            {"original_error": str(original), "rollback_error": str(rollback_error)},
        )
        self.original = original
        self.rollback_error = rollback_error
