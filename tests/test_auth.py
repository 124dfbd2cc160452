from __future__ import annotations

import pytest

import auth
from certs import new_app_certificate
from errors import AuthenticationError


class FakeConfidentialApp:
    created = []

    def __init__(self, client_id, authority, client_credential):
        self.kwargs = {"client_id": client_id, "authority": authority, "client_credential": client_credential}
        FakeConfidentialApp.created.append(self)

    def acquire_token_for_client(self, scopes):
        self.scopes = scopes
        return {"access_token": "app-token"}


class FakePublicApp:
    result = {"access_token": "user-token"}

    def __init__(self, client_id, authority):
        self.client_id = client_id
        self.authority = authority

    def get_accounts(self):
        return []

    def initiate_device_flow(self, scopes):
        return {"user_code": "ABCD", "message": "go to https://microsoft.com/devicelogin"}

    def acquire_token_by_device_flow(self, flow):
        return self.result

    def acquire_token_interactive(self, scopes, prompt=None):
        return self.result


def _cfg(**kw):
    cfg = {"SCC_ENDPOINT": "https://ps.compliance.protection.outlook.com", "TENANT_ID": "organizations",
           "ORGANIZATION": "contoso.onmicrosoft.com", "CLIENT_ID": "app-id"}
    cfg.update(kw)
    return cfg


@pytest.fixture(scope="module")
def pem(tmp_path_factory):
    return new_app_certificate(out_dir=str(tmp_path_factory.mktemp("auth")))


def test_certificate_mode_uses_thumbprint_and_org_authority(monkeypatch, pem):
    monkeypatch.setattr(auth.msal, "ConfidentialClientApplication", FakeConfidentialApp)
    token = auth.acquire_token(_cfg(AUTH_MODE="certificate", CERT_PATH=pem.pem_path,
                                    CERT_THUMBPRINT=pem.thumbprint.lower()))
    app = FakeConfidentialApp.created[-1]
    assert token == "app-token"
    assert app.kwargs["authority"] == "https://login.microsoftonline.com/contoso.onmicrosoft.com"
    assert app.kwargs["client_credential"]["thumbprint"] == pem.thumbprint
    assert app.scopes == ["https://ps.compliance.protection.outlook.com/.default"]


def test_certificate_thumbprint_mismatch(monkeypatch, pem):
    monkeypatch.setattr(auth.msal, "ConfidentialClientApplication", FakeConfidentialApp)
    with pytest.raises(AuthenticationError):
        auth.acquire_token(_cfg(AUTH_MODE="certificate", CERT_PATH=pem.pem_path, CERT_THUMBPRINT="00" * 20))


def test_certificate_mode_needs_app_id():
    with pytest.raises(AuthenticationError) as exc:
        auth.acquire_token(_cfg(AUTH_MODE="certificate", CLIENT_ID=""))
    assert "PURVIEW_APP_ID" in exc.value.hint


@pytest.mark.parametrize("mode", ["interactive", "device-code"])
def test_user_modes(monkeypatch, capsys, mode):
    monkeypatch.setattr(auth.msal, "PublicClientApplication", FakePublicApp)
    assert auth.acquire_token(_cfg(AUTH_MODE=mode, CLIENT_ID="")) == "user-token"
    if mode == "device-code":
        assert "devicelogin" in capsys.readouterr().err


def test_failed_sign_in_raises(monkeypatch):
    monkeypatch.setattr(auth.msal, "PublicClientApplication", FakePublicApp)
    monkeypatch.setattr(FakePublicApp, "result", {"error": "access_denied", "error_description": "user cancelled"})
    with pytest.raises(AuthenticationError, match="user cancelled"):
        auth.acquire_token(_cfg(AUTH_MODE="interactive"))


def test_unknown_mode():
    with pytest.raises(AuthenticationError):
        auth.acquire_token(_cfg(AUTH_MODE="kerberos"))
