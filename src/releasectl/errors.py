"""Exception hierarchy shared by the orchestrator components.

Every error carries the :class:`~releasectl.exit_codes.ExitCode` the CLI
should terminate with and whether automation may retry the command unchanged.
"""
from __future__ import annotations

from .exit_codes import RETRYABLE_CODES, ExitCode


class OrchestratorError(RuntimeError):
    """Base class for orchestrator failures."""

    exit_code: ExitCode = ExitCode.PROVIDER

    @property
    def retryable(self) -> bool:
        """Return True when re-running the same command may succeed."""
        return self.exit_code in RETRYABLE_CODES

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation of the error."""
        return {
            "error": type(self).__name__,
            "message": str(self),
            "code": int(self.exit_code),
            "retryable": self.retryable,
        }


# Precondition errors ------------------------------------------------------
class PreconditionError(OrchestratorError):
    """Raised before any side effect when a command cannot proceed."""

    exit_code = ExitCode.VALIDATION


class ConflictError(PreconditionError):
    """A declaration conflicts with the recorded state."""


class NotFoundError(PreconditionError):
    """The referenced site, release or backup does not exist."""


class DnsNotDirectError(PreconditionError):
    """The DNS record is proxied while a direct record is required."""


class InvalidTransitionError(PreconditionError):
    """A TLS state transition is not allowed from the current state."""


class ConfirmationRequiredError(PreconditionError):
    """A destructive command was invoked without a valid confirmation token."""

    def __init__(self, message: str, *, expected: str) -> None:
        """Record the token the caller must supply to proceed."""
        super().__init__(message)
        self.expected = expected

    def to_dict(self) -> dict[str, object]:
        """Include the expected token in the serialised payload."""
        payload = super().to_dict()
        payload["confirmation"] = self.expected
        return payload


# Transient errors ---------------------------------------------------------
class AlreadyInProgressError(OrchestratorError):
    """Another operation holds the lock for the same domain and scope."""

    exit_code = ExitCode.BUSY


class TimeoutExceededError(OrchestratorError):
    """A bounded poll ran out of time."""

    exit_code = ExitCode.TIMEOUT


class IssueTimeoutError(TimeoutExceededError):
    """Certificate issuance did not complete (or has not completed yet)."""


class HealthCheckTimeoutError(TimeoutExceededError):
    """The health endpoint never reported ready."""


class CancelledError(OrchestratorError):
    """A polling loop was cancelled before it completed."""

    exit_code = ExitCode.CANCELLED


class ProviderError(OrchestratorError):
    """An external collaborator (nginx, systemd, DNS, certbot, database) failed."""

    exit_code = ExitCode.PROVIDER


# Partial failures ---------------------------------------------------------
class MigrationFailedError(OrchestratorError):
    """A migration script failed; earlier migrations remain applied."""

    exit_code = ExitCode.PARTIAL

    def __init__(self, version: int, cause: str) -> None:
        """Record the failing migration version and the underlying cause."""
        super().__init__(f"Migration {version:04d} failed: {cause}")
        self.version = version
        self.cause = cause

    def to_dict(self) -> dict[str, object]:
        """Include the failing version in the serialised payload."""
        payload = super().to_dict()
        payload["version"] = self.version
        return payload


class ReleaseFailedError(OrchestratorError):
    """A release stopped at *stage*; the compensating action already ran."""

    exit_code = ExitCode.PARTIAL

    def __init__(self, stage: str, message: str, *, release_id: str | None = None) -> None:
        """Record the failing stage and release identifier."""
        super().__init__(f"Release failed during {stage}: {message}")
        self.stage = stage
        self.release_id = release_id

    def to_dict(self) -> dict[str, object]:
        """Include the failing stage in the serialised payload."""
        payload = super().to_dict()
        payload["stage"] = self.stage
        payload["release_id"] = self.release_id
        return payload


class IssueFailedError(OrchestratorError):
    """The certificate client reported a failed issuance."""

    exit_code = ExitCode.PARTIAL


# Fatal errors -------------------------------------------------------------
class FatalError(OrchestratorError):
    """Requires manual operator intervention; never retried automatically."""

    exit_code = ExitCode.FATAL


class NoRollbackTargetError(FatalError):
    """No previously active release exists to roll back to."""


class RollbackFailedError(FatalError):
    """The rollback target itself failed its health check."""


class BackupFailedError(FatalError):
    """A backup required before a destructive action could not be taken."""


__all__ = [
    "AlreadyInProgressError",
    "BackupFailedError",
    "CancelledError",
    "ConfirmationRequiredError",
    "ConflictError",
    "DnsNotDirectError",
    "FatalError",
    "HealthCheckTimeoutError",
    "InvalidTransitionError",
    "IssueFailedError",
    "IssueTimeoutError",
    "MigrationFailedError",
    "NoRollbackTargetError",
    "NotFoundError",
    "OrchestratorError",
    "PreconditionError",
    "ProviderError",
    "ReleaseFailedError",
    "RollbackFailedError",
    "TimeoutExceededError",
]
