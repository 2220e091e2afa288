"""Shared fixtures for mailfilter tests."""

import pytest


@pytest.fixture(autouse=True)
def _no_sops(monkeypatch):
    """Ensure tests never try to invoke SOPS."""
    monkeypatch.setenv("MAILFILTER_USE_SOPS", "false")
