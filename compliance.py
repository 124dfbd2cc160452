# compliance.py – Security & Compliance REST (InvokeCommand) 세션
import base64
import logging
import time
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Optional

import requests

from config import CONFIG
from errors import ComplianceError, ConnectionFailedError, classify

logger = logging.getLogger(__name__)


def file_data(raw: bytes) -> str:
    """byte[] 파라미터(FileData)는 JSON 본문에 base64 문자열로 전달"""
    return base64.b64encode(raw).decode("ascii")


def _error_message(r: requests.Response) -> str:
    try:
        detail = r.json()
    except ValueError:
        return r.text
    err = detail.get("error") or {}
    msg = err.get("message") or r.text
    # 서비스 쪽 상세 오류는 innererror / details 에 들어오는 경우가 많음
    inner = (err.get("innererror") or {}).get("message") or ""
    details = " ".join(d.get("message", "") for d in err.get("details") or [] if isinstance(d, dict))
    return " ".join(x for x in (msg, inner, details) if x)


class ComplianceSession:
    """Explicit connection to one tenant's compliance endpoint.

    Every vendor cmdlet is reached through ``invoke(cmdlet, **params)``, which
    returns the result records and follows ``@odata.nextLink`` pages. Service
    errors surface as the typed exceptions from ``errors``.
    """

    def __init__(self, access_token: str, organization: str, tenant_id: str = "",
                 endpoint: Optional[str] = None, timeout: Optional[int] = None,
                 propagation_delay: Optional[int] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 http: Optional[requests.Session] = None):
        self.organization = organization
        self.tenant_id = tenant_id or organization
        self.endpoint = (endpoint or CONFIG.get("SCC_ENDPOINT")).rstrip("/")
        self.timeout = timeout or CONFIG.get("HTTP_TIMEOUT", 120)
        self.propagation_delay = CONFIG.get("PROPAGATION_DELAY", 5) if propagation_delay is None else propagation_delay
        self._sleep = sleep
        self._http = http or requests.Session()
        self._http.headers.update({
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
            "X-ResponseFormat": "json",
            "X-AnchorMailbox": f"UPN:SystemMailbox{{bb558c35-97f1-4cb9-8ff7-d53741dc928c}}@{organization}",
        })
        self.closed = False

    @property
    def url(self) -> str:
        return f"{self.endpoint}/adminapi/beta/{self.tenant_id}/InvokeCommand"

    def _post(self, url: str, cmdlet: str, body: Optional[Dict]) -> Dict:
        try:
            if body is None:
                r = self._http.get(url, timeout=self.timeout)
            else:
                r = self._http.post(url, json=body, timeout=self.timeout)
        except requests.ConnectionError as e:
            raise ConnectionFailedError(f"cannot reach {self.endpoint}: {e}", cmdlet=cmdlet)
        except requests.Timeout as e:
            raise ConnectionFailedError(f"request timed out after {self.timeout}s: {e}", cmdlet=cmdlet)
        if r.status_code >= 400:
            raise classify(r.status_code, _error_message(r), cmdlet=cmdlet)
        if not r.content:
            return {}
        try:
            return r.json()
        except ValueError:
            raise ComplianceError(f"non-JSON response ({r.status_code})", status=r.status_code, cmdlet=cmdlet)

    def invoke(self, cmdlet: str, **params) -> List[Dict]:
        if self.closed:
            raise ComplianceError("session is closed", cmdlet=cmdlet)
        params = {k: v for k, v in params.items() if v is not None}
        logger.debug("invoke %s %s", cmdlet, sorted(params))
        body = {"CmdletInput": {"CmdletName": cmdlet, "Parameters": params}}
        data = self._post(self.url, cmdlet, body)
        out = list(data.get("value", []))
        next_link = data.get("@odata.nextLink")
        while next_link:
            data = self._post(next_link, cmdlet, None)
            out.extend(data.get("value", []))
            next_link = data.get("@odata.nextLink")
        return out

    def wait_for_propagation(self, seconds: Optional[float] = None) -> None:
        delay = self.propagation_delay if seconds is None else seconds
        if delay and delay > 0:
            logger.info("waiting %ss for backend propagation", delay)
            self._sleep(delay)

    def close(self) -> None:
        if not self.closed:
            self._http.close()
            self.closed = True


@contextmanager
def connect(settings: Optional[Dict] = None) -> Iterator[ComplianceSession]:
    """Acquire a token, yield a session, and always close it on exit."""
    from auth import acquire_token

    cfg = dict(CONFIG)
    cfg.update(settings or {})
    if not cfg.get("ORGANIZATION"):
        raise ComplianceError("organization domain is not set",
                              hint="Set PURVIEW_ORGANIZATION or pass --organization (e.g. contoso.onmicrosoft.com).")
    token = acquire_token(cfg)
    session = ComplianceSession(
        access_token=token,
        organization=cfg.get("ORGANIZATION", ""),
        tenant_id=cfg.get("TENANT_ID") if cfg.get("TENANT_ID") not in ("", "common", "organizations") else "",
        endpoint=cfg.get("SCC_ENDPOINT"),
        timeout=cfg.get("HTTP_TIMEOUT"),
        propagation_delay=cfg.get("PROPAGATION_DELAY"),
    )
    logger.info("connected to %s", session.organization or session.tenant_id)
    try:
        yield session
    finally:
        session.close()
        logger.info("disconnected from %s", session.organization or session.tenant_id)
