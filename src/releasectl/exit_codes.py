"""Enumerations for CLI exit codes."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes enforced across the CLI.

    Codes below ``FATAL`` that are also listed in :data:`RETRYABLE_CODES`
    may be retried unchanged by automation; everything else needs an operator.
    """

    OK = 0
    VALIDATION = 2
    ENVIRONMENT = 3
    PROVIDER = 4
    TIMEOUT = 5
    PARTIAL = 6
    CANCELLED = 7
    FATAL = 70
    BUSY = 75


RETRYABLE_CODES = frozenset(
    {ExitCode.PROVIDER, ExitCode.TIMEOUT, ExitCode.CANCELLED, ExitCode.BUSY}
)
