# auth.py – 테넌트 인증: 대화형 브라우저 / 디바이스 코드 / 인증서 app-only
import logging
import sys
from typing import Dict, List

import msal

from certs import load_certificate
from errors import AuthenticationError

logger = logging.getLogger(__name__)

# Exchange Online PowerShell 공개 클라이언트 (대화형 로그인 기본값)
EXO_PUBLIC_CLIENT_ID = "fb78d390-0c51-40cd-8e17-fdbfab77341b"


def _scopes(cfg: Dict) -> List[str]:
    return [f"{cfg['SCC_ENDPOINT'].rstrip('/')}/.default"]


def _authority(cfg: Dict) -> str:
    tenant = (cfg.get("TENANT_ID") or "").strip()
    if tenant in ("", "common", "organizations") and cfg.get("AUTH_MODE") == "certificate":
        # app-only 토큰은 테넌트 지정 필수 → 조직 도메인 사용
        tenant = cfg.get("ORGANIZATION") or tenant
    return f"https://login.microsoftonline.com/{tenant or 'organizations'}"


def _token_or_raise(result: Dict, mode: str) -> str:
    if result and "access_token" in result:
        return result["access_token"]
    detail = (result or {}).get("error_description") or (result or {}).get("error") or "no token returned"
    raise AuthenticationError(f"{mode} sign-in failed: {detail}")


def _certificate_token(cfg: Dict) -> str:
    if not (cfg.get("CLIENT_ID") and cfg.get("ORGANIZATION")):
        raise AuthenticationError("certificate sign-in needs an application id and an organization domain",
                                  hint="Set PURVIEW_APP_ID and PURVIEW_ORGANIZATION (e.g. contoso.onmicrosoft.com).")
    key_pem, thumbprint = load_certificate(cfg.get("CERT_PATH", ""), cfg.get("CERT_PASSWORD") or None)
    expected = (cfg.get("CERT_THUMBPRINT") or "").replace(" ", "").upper()
    if expected and expected != thumbprint:
        raise AuthenticationError(f"certificate thumbprint {thumbprint} does not match configured {expected}")

    app = msal.ConfidentialClientApplication(
        client_id=cfg["CLIENT_ID"],
        authority=_authority(cfg),
        client_credential={"private_key": key_pem, "thumbprint": thumbprint},
    )
    return _token_or_raise(app.acquire_token_for_client(scopes=_scopes(cfg)), "certificate")


def _public_app(cfg: Dict) -> msal.PublicClientApplication:
    return msal.PublicClientApplication(client_id=cfg.get("CLIENT_ID") or EXO_PUBLIC_CLIENT_ID,
                                        authority=_authority(cfg))


def _interactive_token(cfg: Dict, device_code: bool = False) -> str:
    app = _public_app(cfg)
    scopes = _scopes(cfg)

    # silent first
    accts = app.get_accounts()
    if accts:
        result = app.acquire_token_silent(scopes=scopes, account=accts[0])
        if result and "access_token" in result:
            return result["access_token"]

    if device_code:
        flow = app.initiate_device_flow(scopes=scopes)
        if "user_code" not in flow:
            raise AuthenticationError(f"device code flow could not start: {flow.get('error_description', flow)}")
        print(flow["message"], file=sys.stderr, flush=True)
        return _token_or_raise(app.acquire_token_by_device_flow(flow), "device code")

    return _token_or_raise(app.acquire_token_interactive(scopes=scopes, prompt="select_account"), "interactive")


def acquire_token(cfg: Dict) -> str:
    """Access token for the compliance endpoint using the configured AUTH_MODE."""
    mode = (cfg.get("AUTH_MODE") or "interactive").lower()
    logger.info("signing in (%s)", mode)
    if mode == "certificate":
        return _certificate_token(cfg)
    if mode in ("device", "device-code", "device_code"):
        return _interactive_token(cfg, device_code=True)
    if mode == "interactive":
        return _interactive_token(cfg)
    raise AuthenticationError(f"unknown auth mode {mode!r}",
                              hint="Use one of: interactive, device-code, certificate.")
