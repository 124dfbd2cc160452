from __future__ import annotations

import pytest

from config import CONFIG

from .helpers.fakes import FakeComplianceService


@pytest.fixture(autouse=True)
def _no_external_services(monkeypatch):
    """Keep tests away from real storage, webhooks and tenant guard settings."""
    monkeypatch.setitem(CONFIG, "AZURE_STORAGE_CONNECTION_STRING", "")
    monkeypatch.setitem(CONFIG, "TEAMS_WEBHOOK_URL", "")
    monkeypatch.setitem(CONFIG, "PROPAGATION_DELAY", 0)
    monkeypatch.delenv("PURVIEW_TENANT_TYPE", raising=False)
    monkeypatch.delenv("PURVIEW_CONNECTED_ORG", raising=False)


@pytest.fixture
def source():
    return FakeComplianceService("source.onmicrosoft.com")


@pytest.fixture
def target():
    return FakeComplianceService("target.onmicrosoft.com")
