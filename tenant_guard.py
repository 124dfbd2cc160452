# tenant_guard.py – 소스/타깃 테넌트 혼동 방지 (환경 변수 기반 soft guard)
import logging
import os
from typing import Mapping, Optional

from errors import TenantGuardError

logger = logging.getLogger(__name__)

EXPORT_OPERATIONS = ("export", "backup")
IMPORT_OPERATIONS = ("import", "restore")


def check(operation: str, organization: str = "", environ: Optional[Mapping[str, str]] = None) -> None:
    """
    PURVIEW_TENANT_TYPE=Target → export/backup 차단
    PURVIEW_TENANT_TYPE=Source → import/restore 차단
    PURVIEW_CONNECTED_ORG 설정 시 다른 조직 연결 차단
    변수가 없으면 아무것도 하지 않음
    """
    env = os.environ if environ is None else environ
    tenant_type = (env.get("PURVIEW_TENANT_TYPE") or "").strip().lower()
    expected_org = (env.get("PURVIEW_CONNECTED_ORG") or "").strip().lower()
    op = operation.lower()

    if tenant_type == "target" and op in EXPORT_OPERATIONS:
        raise TenantGuardError(f"{operation} blocked: this environment is flagged as the Target tenant")
    if tenant_type == "source" and op in IMPORT_OPERATIONS:
        raise TenantGuardError(f"{operation} blocked: this environment is flagged as the Source tenant")
    if expected_org and organization and organization.strip().lower() != expected_org:
        raise TenantGuardError(
            f"{operation} blocked: connected to {organization}, but PURVIEW_CONNECTED_ORG is {expected_org}")
    if tenant_type or expected_org:
        logger.debug("tenant guard passed for %s (type=%s, org=%s)", operation, tenant_type or "-", organization or "-")
