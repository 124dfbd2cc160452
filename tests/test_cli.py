from __future__ import annotations

import json
import os
from contextlib import contextmanager

import pytest

import cli
from errors import AuthenticationError

from .helpers.rulepacks import regex, rule_pack_xml

ORG = ["--organization", "contoso.onmicrosoft.com"]


@pytest.fixture
def activity(monkeypatch):
    rows = []
    monkeypatch.setattr(cli.storage_logs, "log_activity", lambda *a, **kw: rows.append(a) or False)
    monkeypatch.setattr(cli, "_confirm", lambda message: False)
    return rows


@pytest.fixture
def tenant(monkeypatch, activity):
    """Route every command to one in-memory tenant; swap with ``tenant.use(service)``."""

    class Router:
        service = None
        settings = []

        def use(self, service):
            self.service = service

    router = Router()

    @contextmanager
    def fake_connect(settings):
        router.settings.append(settings)
        yield router.service

    monkeypatch.setattr(cli, "connect", fake_connect)
    return router


def _seed_sits(service):
    service.add_rule_pack(rule_pack_xml(
        "a0a0a0a0-1111-4111-8111-00000000000a", "Contoso core",
        [("a-1", "Contoso Employee ID", ["Contoso_regex_employee"])], [regex("Contoso_regex_employee", r"EMP\d{6}")]))


def test_backup_writes_manifest_and_logs_activity(tenant, activity, source, tmp_path, capsys):
    tenant.use(source)
    source.add_label("Public")
    out = str(tmp_path / "bk")
    assert cli.main(["backup", *ORG, "--output", out, "--skip-dlp"]) == 0
    manifest = json.loads(capsys.readouterr().out)
    assert manifest["Components"]["DLPPolicies"] == {"Status": "Skipped"}
    assert os.path.exists(os.path.join(out, "backup_manifest.json"))
    assert activity == [("contoso.onmicrosoft.com", "backup", "INFO", "backup succeeded")]
    assert tenant.settings[0]["ORGANIZATION"] == "contoso.onmicrosoft.com"


def test_auth_options_override_config(tenant, source, tmp_path):
    tenant.use(source)
    cli.main(["export-labels", *ORG, "--auth", "certificate", "--app-id", "app", "--thumbprint", "AB",
              "--propagation-delay", "0", "--output", str(tmp_path / "l.json")])
    cfg = tenant.settings[0]
    assert (cfg["AUTH_MODE"], cfg["CLIENT_ID"], cfg["CERT_THUMBPRINT"], cfg["PROPAGATION_DELAY"]) == (
        "certificate", "app", "AB", 0)


def test_tenant_guard_blocks_before_connecting(tenant, activity, monkeypatch, tmp_path):
    monkeypatch.setenv("PURVIEW_TENANT_TYPE", "Target")
    assert cli.main(["backup", *ORG, "--output", str(tmp_path)]) == 1
    assert tenant.settings == []
    assert activity[0][2] == "ERROR"


def test_validate_sits_offline(tenant, source, tmp_path):
    tenant.use(source)
    _seed_sits(source)
    out = str(tmp_path / "sits")
    assert cli.main(["export-sits", *ORG, "--output", out]) == 0
    assert cli.validate_sits_main(["--input", out]) == 0

    broken = tmp_path / "broken"
    broken.mkdir()
    (broken / "rulepack_x.xml").write_text(
        rule_pack_xml("b0b0b0b0-2222-4222-8222-00000000000b", "Broken", [("x", "Broken", ["nowhere"])]),
        encoding="utf-8")
    assert cli.main(["validate-sits", "--input", str(broken)]) == 1


def test_bad_activity_connection_string_keeps_exit_code(source, tmp_path, monkeypatch, caplog):
    _seed_sits(source)
    out = str(tmp_path / "sits")
    cli.sits.export_custom_sits(source, out)
    monkeypatch.setitem(cli.CONFIG, "AZURE_STORAGE_CONNECTION_STRING", "not-a-connection-string")
    assert cli.main(["validate-sits", "--input", out]) == 0
    assert "activity log write failed" in caplog.text


def test_import_sits_conflict_exits_with_hint(tenant, source, target, tmp_path, caplog):
    _seed_sits(source)
    tenant.use(source)
    out = str(tmp_path / "sits")
    cli.main(["export-sits", *ORG, "--output", out])

    tenant.use(target)
    assert cli.main(["import-sits", *ORG, "--input", out]) == 0
    assert cli.main(["import-sits", *ORG, "--input", out]) == 1
    assert "--force" in caplog.text
    assert cli.main(["import-sits", *ORG, "--input", out, "--force"]) == 0


def test_labels_and_policies_between_tenants(tenant, source, target, tmp_path):
    parent = source.add_label("Confidential")
    source.add_label("Confidential-HR", display_name="HR", parent_id=parent)
    source.add_policy("Label", "Global", Labels=[parent])
    tenant.use(source)
    folder = str(tmp_path / "cfg")
    assert cli.main(["export-labels", *ORG, "--output", os.path.join(folder, "labels.json")]) == 0
    assert cli.main(["export-policies", *ORG, "--output", folder, "--skip-dlp", "--skip-autolabel"]) == 0
    assert sorted(os.listdir(folder)) == ["label_policies.json", "labels.json"]

    tenant.use(target)
    assert cli.main(["import-labels", *ORG, "--input", os.path.join(folder, "labels.json")]) == 0
    assert cli.main(["import-policies", *ORG, "--input", folder]) == 0
    assert target.policies["Label"]["Global"]["Labels"] == ["Confidential"]


def test_import_policies_with_nothing_to_import_fails(tenant, target, tmp_path):
    tenant.use(target)
    assert cli.main(["import-policies", *ORG, "--input", str(tmp_path)]) == 1


def test_authentication_failure_returns_one(monkeypatch, activity, tmp_path, caplog):
    @contextmanager
    def failing_connect(settings):
        raise AuthenticationError("interactive sign-in failed: user cancelled")
        yield

    monkeypatch.setattr(cli, "connect", failing_connect)
    assert cli.main(["export-labels", *ORG, "--output", str(tmp_path / "l.json")]) == 1
    assert "Exchange.ManageAsApp" in caplog.text


def test_new_certificate(activity, tmp_path, capsys):
    assert cli.new_certificate_main(["--subject", "CN=CliTest", "--output", str(tmp_path)]) == 0
    info = json.loads(capsys.readouterr().out)
    assert os.path.exists(info["pem_path"]) and os.path.exists(info["cer_path"])
    assert len(info["thumbprint"]) == 40


def test_history_lists_recent_runs(monkeypatch, activity, capsys):
    monkeypatch.setattr(cli.storage_logs, "query_recent",
                        lambda org, top=50: [{"Operation": "backup", "Level": "INFO"}][:top])
    assert cli.main(["history", *ORG, "--top", "1"]) == 0
    assert json.loads(capsys.readouterr().out) == [{"Operation": "backup", "Level": "INFO"}]
    assert activity == []


def test_restore_requires_input():
    with pytest.raises(SystemExit):
        cli.main(["restore"])
