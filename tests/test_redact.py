"""
tests/test_redact.py -- Unit tests for audit/redact.py.

Covers:
  - sensitive keys are masked at any depth, case-insensitively
  - arrays and nested objects are walked; structure is preserved
  - non-matching leaves are returned unchanged
  - redact() is idempotent and never mutates its input
"""

from __future__ import annotations

import copy

import pytest

from audit.redact import REDACTION_MASK, is_sensitive_key, redact

SAMPLE = {
    "email": "user@example.com",
    "password": "hunter22",
    "profile": {
        "newPassword": "x",
        "firstName": "Ada",
        "tokens": [{"refresh_token": "abc", "kind": "refresh"}],
    },
    "items": [1, "two", None, {"clientSecret": {"nested": True}}],
    "loginHint": "ada",
    "count": 3,
}


@pytest.mark.parametrize(
    "key",
    ["password", "PASSWORD", "newPassword", "refresh_token", "refreshToken", "apiSecret", "loginHint", "accessToken"],
)
def test_sensitive_keys_match(key):
    assert is_sensitive_key(key)


@pytest.mark.parametrize("key", ["email", "firstName", "role", "organizationId", "ip"])
def test_ordinary_keys_do_not_match(key):
    assert not is_sensitive_key(key)


def test_masks_at_every_depth():
    out = redact(SAMPLE)
    assert out["password"] == REDACTION_MASK
    assert out["profile"]["newPassword"] == REDACTION_MASK
    # The whole value is masked, even when it is a container.
    assert out["profile"]["tokens"] == REDACTION_MASK
    assert out["items"][3]["clientSecret"] == REDACTION_MASK
    assert out["loginHint"] == REDACTION_MASK


def test_non_matching_leaves_untouched():
    out = redact(SAMPLE)
    assert out["email"] == "user@example.com"
    assert out["profile"]["firstName"] == "Ada"
    assert out["items"][:3] == [1, "two", None]
    assert out["count"] == 3


def test_values_are_not_inspected():
    # Only keys decide: a value that looks like a secret under an ordinary key is kept.
    assert redact({"note": "password=hunter2"}) == {"note": "password=hunter2"}


def test_structure_is_preserved():
    out = redact(SAMPLE)
    assert list(out) == list(SAMPLE)
    assert list(out["profile"]) == list(SAMPLE["profile"])
    assert len(out["items"]) == len(SAMPLE["items"])


def test_idempotent():
    once = redact(SAMPLE)
    assert redact(once) == once


def test_input_not_mutated():
    original = copy.deepcopy(SAMPLE)
    redact(SAMPLE)
    assert SAMPLE == original


@pytest.mark.parametrize("value", [None, 0, "text", [], {}, [[{"token": 1}]]])
def test_scalars_and_empty_containers(value):
    out = redact(value)
    if value == [[{"token": 1}]]:
        assert out == [[{"token": REDACTION_MASK}]]
    else:
        assert out == value
