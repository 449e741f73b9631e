"""Tests for destructive-command confirmation tokens."""
from __future__ import annotations

import pytest

from releasectl.confirm import TOKEN_LENGTH, confirmation_token, require_confirmation
from releasectl.errors import ConfirmationRequiredError


def test_token_is_stable_and_short() -> None:
    token = confirmation_token("reset", "api.example.com", "public", 3)

    assert token == confirmation_token("reset", "api.example.com", "public", 3)
    assert len(token) == TOKEN_LENGTH
    int(token, 16)


@pytest.mark.parametrize(
    "other",
    [
        ("revert", "api.example.com", "public", 3),
        ("reset", "www.example.com", "public", 3),
        ("reset", "api.example.com", "app", 3),
        ("reset", "api.example.com", "public", 4),
    ],
)
def test_token_binds_every_input(other: tuple[str, str, str, int]) -> None:
    assert confirmation_token(*other) != confirmation_token("reset", "api.example.com", "public", 3)


def test_missing_token_names_the_expected_one() -> None:
    expected = confirmation_token("restore", "api.example.com", "b1", 0)

    with pytest.raises(ConfirmationRequiredError, match=f"--confirm {expected}") as excinfo:
        require_confirmation(
            None, action="restore", domain="api.example.com", target="b1", ledger_length=0
        )

    assert excinfo.value.expected == expected
    assert excinfo.value.to_dict()["confirmation"] == expected


def test_stale_token_is_rejected() -> None:
    stale = confirmation_token("restore", "api.example.com", "b1", 0)

    with pytest.raises(ConfirmationRequiredError, match="stale or wrong"):
        require_confirmation(
            stale, action="restore", domain="api.example.com", target="b1", ledger_length=1
        )


def test_current_token_passes() -> None:
    token = confirmation_token("revert", "api.example.com", "2", 5)

    require_confirmation(
        f" {token} ", action="revert", domain="api.example.com", target="2", ledger_length=5
    )
