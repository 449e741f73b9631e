"""Confirmation tokens for destructive commands.

A token is a short digest of the action, the domain, the action's target and
the current length of the site's migration ledger. Every destructive action
appends to the ledger, so a token stops matching as soon as it has been used
and can never be replayed by a retry.
"""
from __future__ import annotations

import hashlib

from .errors import ConfirmationRequiredError

TOKEN_LENGTH = 12


def confirmation_token(action: str, domain: str, target: str, ledger_length: int) -> str:
    """Return the token that authorises *action* on *domain* right now."""
    material = f"{action}\0{domain}\0{target}\0{ledger_length}".encode()
    return hashlib.sha256(material).hexdigest()[:TOKEN_LENGTH]


def require_confirmation(
    supplied: str | None,
    *,
    action: str,
    domain: str,
    target: str,
    ledger_length: int,
) -> None:
    """Raise :class:`ConfirmationRequiredError` unless *supplied* is current."""
    expected = confirmation_token(action, domain, target, ledger_length)
    if not supplied:
        raise ConfirmationRequiredError(
            f"{action} on {domain} is destructive; re-run with --confirm {expected}.",
            expected=expected,
        )
    if supplied.strip() != expected:
        raise ConfirmationRequiredError(
            f"Confirmation token for {action} on {domain} is stale or wrong; "
            f"the current token is {expected}.",
            expected=expected,
        )


__all__ = ["confirmation_token", "require_confirmation"]
