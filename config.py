# config.py – 환경 변수 기반 설정 (CONFIG dict)
import os
from typing import Dict, Mapping, Optional

SCC_ENDPOINT = "https://ps.compliance.protection.outlook.com"


def _int(value: str, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def load_config(environ: Optional[Mapping[str, str]] = None) -> Dict[str, object]:
    """
    환경 변수에서 설정을 읽어 dict로 반환.
    CLI 옵션이 있으면 cli.py 에서 덮어씀.
    """
    env = os.environ if environ is None else environ
    return {
        "TENANT_ID": (env.get("PURVIEW_TENANT_ID") or "organizations").strip(),
        "CLIENT_ID": env.get("PURVIEW_APP_ID", ""),
        "ORGANIZATION": env.get("PURVIEW_ORGANIZATION", ""),
        "AUTH_MODE": env.get("PURVIEW_AUTH_MODE", "interactive"),
        "CERT_THUMBPRINT": env.get("PURVIEW_CERT_THUMBPRINT", ""),
        "CERT_PATH": env.get("PURVIEW_CERT_PATH", ""),
        "CERT_PASSWORD": env.get("PURVIEW_CERT_PASSWORD", ""),
        "SCC_ENDPOINT": env.get("PURVIEW_SCC_ENDPOINT", SCC_ENDPOINT).rstrip("/"),
        "HTTP_TIMEOUT": _int(env.get("PURVIEW_HTTP_TIMEOUT", ""), 120),
        # 쓰기 이후 백엔드 전파 지연 대기 (초)
        "PROPAGATION_DELAY": _int(env.get("PURVIEW_PROPAGATION_DELAY", ""), 5),
        "AZURE_STORAGE_CONNECTION_STRING": env.get("AZURE_STORAGE_CONNECTION_STRING", ""),
        "BACKUP_CONTAINER": env.get("PURVIEW_BACKUP_CONTAINER", "purview-backups"),
        "ACTIVITY_TABLE_NAME": env.get("PURVIEW_ACTIVITY_TABLE", "PurviewActivity"),
        "TEAMS_WEBHOOK_URL": env.get("TEAMS_WEBHOOK_URL", ""),
        "LOG_LEVEL": env.get("LOG_LEVEL", "INFO"),
    }


CONFIG = load_config()
