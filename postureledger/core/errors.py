from __future__ import annotations


class PostureLedgerError(Exception):
    """Base error for PostureLedger."""


class IntegrationUnavailableError(PostureLedgerError):
    """External integration short-circuited by an open breaker."""


class SourceHostingError(PostureLedgerError):
    """Source-hosting API request failure."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class SourceAuthError(SourceHostingError):
    """Source-hosting credential rejected."""


class SourcePermissionDenied(SourceHostingError):
    """Sub-resource is forbidden or invisible to the connected account."""


class SourceUnavailableError(SourceHostingError):
    """Source-hosting API still failing after retries."""


class IntegrationNotConnectedError(PostureLedgerError):
    """Organization has no active source-hosting integration."""


class DeviceAuthError(PostureLedgerError):
    """Device credential missing, revoked or invalid."""


class EnrollmentError(PostureLedgerError):
    """Enrollment token rejected."""

    def __init__(self, message: str, *, code: str, status_code: int) -> None:
        super().__init__(message)
        self.code = code
        self.status_code = status_code


class TrackedItemStateError(PostureLedgerError):
    """Requested transition is not allowed for this tracked item."""


class ServiceBusyError(PostureLedgerError):
    """Run capacity is saturated."""


class CheckEvaluationError(PostureLedgerError):
    """A check could not be evaluated against the data it was given."""


class TrackedItemNotFoundError(PostureLedgerError):
    """Tracked item does not exist in the caller's organization."""


class DeviceNotFoundError(PostureLedgerError):
    """Device, or the user it is assigned to, does not exist in the caller's organization."""


class TrackedItemForbiddenError(PostureLedgerError):
    """Caller may not act on this tracked item."""


class RunFailedError(PostureLedgerError):
    """A reconciliation run ended without evaluating its checks."""

    def __init__(self, message: str, *, run_id: str) -> None:
        super().__init__(message)
        self.run_id = run_id
