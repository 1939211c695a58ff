"""Exceptions for retention and privacy request operations."""

from typing import Any, Optional


class ComplianceError(Exception):
    """Base exception for the compliance engine."""


class NotFoundError(ComplianceError):
    """Base class for absent policies, requests and subjects."""

    def __init__(self, resource_type: str, resource_id: Any):
        self.resource_type = resource_type
        self.resource_id = resource_id
        self.message = f"{resource_type} '{resource_id}' not found"
        super().__init__(self.message)


class PolicyNotFoundError(NotFoundError):
    """No active retention policy exists for the table."""

    def __init__(self, table_name: str):
        self.table_name = table_name
        super().__init__("Retention policy for table", table_name)


class SubjectNotFoundError(NotFoundError):
    """The data subject (user) does not exist."""

    def __init__(self, subject: Any):
        super().__init__("User", subject)


class ExportRequestNotFoundError(NotFoundError):
    """Export request not found."""

    def __init__(self, export_id: str):
        super().__init__("Export request", export_id)


class DeletionRequestNotFoundError(NotFoundError):
    """Deletion request not found."""

    def __init__(self, deletion_id: str):
        super().__init__("Deletion request", deletion_id)


class ArtifactNotFoundError(NotFoundError):
    """Export artifact missing from the artifact store."""

    def __init__(self, artifact: str):
        super().__init__("Export artifact", artifact)


class ConflictError(ComplianceError):
    """The operation conflicts with the current state."""


class DuplicatePolicyError(ConflictError):
    """An active retention policy already exists for the table."""

    def __init__(self, table_name: str):
        self.table_name = table_name
        super().__init__(f"Retention policy already exists for table '{table_name}'")


class AlreadyVerifiedError(ConflictError):
    """The deletion request has already been verified."""

    def __init__(self, deletion_id: str):
        self.request_id = deletion_id
        super().__init__(f"Deletion request {deletion_id} already verified")


class ExportNotReadyError(ConflictError):
    """The export has not completed yet."""

    def __init__(self, export_id: str, status: str):
        self.request_id = export_id
        self.status = status
        super().__init__(f"Export {export_id} is not completed (status: {status})")


class ExportExpiredError(ConflictError):
    """The export artifact has passed its expiry."""

    def __init__(self, export_id: str):
        self.request_id = export_id
        super().__init__(f"Export {export_id} has expired")


class DownloadLimitExceededError(ConflictError):
    """The export artifact reached its download limit."""

    def __init__(self, export_id: str, max_downloads: int):
        self.request_id = export_id
        self.max_downloads = max_downloads
        super().__init__(
            f"Export {export_id} reached its limit of {max_downloads} downloads"
        )


class UnknownTableError(ComplianceError):
    """The table is not a governed table."""

    def __init__(self, table_name: str):
        self.table_name = table_name
        super().__init__(f"Table '{table_name}' is not a governed table")


class InvalidCriteriaError(ComplianceError):
    """Retention or deletion criteria are malformed."""

    def __init__(self, message: str, table_name: Optional[str] = None):
        self.table_name = table_name
        super().__init__(message)


class InvalidTokenError(ComplianceError):
    """The verification token does not match the request."""

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__("Invalid verification token")


class UnsupportedFormatError(ComplianceError):
    """The requested export encoding is not supported."""

    def __init__(self, export_format: str):
        self.export_format = export_format
        super().__init__(f"Unsupported export format: {export_format}")


class FatalDeletionError(ComplianceError):
    """The identity scrub of a full deletion failed and was rolled back."""

    def __init__(self, subject_id: str, reason: str):
        self.subject_id = subject_id
        super().__init__(f"Full deletion of user {subject_id} rolled back: {reason}")


class DeletionFailedError(ComplianceError):
    """A verified deletion request ended in the failed state."""

    def __init__(self, deletion_id: str, reason: str):
        self.request_id = deletion_id
        super().__init__(f"Deletion request {deletion_id} failed: {reason}")
