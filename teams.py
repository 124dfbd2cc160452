# teams.py – Teams Incoming Webhook 실행 결과 알림
from typing import Dict, Optional

import requests

from config import CONFIG

_STATUS_COLORS = {"Success": "2EB886", "PartialFailure": "F2C744", "Failed": "D63333"}


def send_teams_message(title: str, text: str, webhook_url: Optional[str] = None, status: str = "") -> dict:
    url = webhook_url or CONFIG.get("TEAMS_WEBHOOK_URL", "")
    if not url:
        raise RuntimeError("TEAMS_WEBHOOK_URL not configured.")
    payload = {
        "@type": "MessageCard",
        "@context": "http://schema.org/extensions",
        "themeColor": _STATUS_COLORS.get(status, "0076D7"),
        "summary": title,
        "title": title,
        "text": text
    }
    r = requests.post(url, json=payload, timeout=30)
    r.raise_for_status()
    return {"status": "ok"}


def build_run_summary(manifest: Dict) -> str:
    """backup / restore manifest → Markdown 요약"""
    lines = []
    for name, comp in (manifest.get("Components") or {}).items():
        status = comp.get("Status", "-")
        extra = ""
        if comp.get("Count") is not None:
            extra = f" · {comp['Count']} object(s)"
        if comp.get("Error"):
            extra += f" · {comp['Error'][:200]}"
        lines.append(f"- **{name}**: {status}{extra}")
    org = manifest.get("Organization") or manifest.get("TargetOrganization") or "-"
    head = f"Tenant: `{org}` · Status: **{manifest.get('Status', '-')}** · {manifest.get('ElapsedSeconds', 0)}s"
    return "\n\n".join([head, "\n".join(lines) if lines else "- (no components)"])
