# utils.py
import json
import os
import re
import time
from datetime import datetime, timezone
from typing import Any

_GUID_RE = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def is_guid(value) -> bool:
    return bool(value) and bool(_GUID_RE.match(str(value).strip("{}")))


def normalize_id(value) -> str:
    """GUID/식별자 비교 키: 공백·중괄호 제거, 소문자"""
    return "" if value is None else str(value).strip().strip("{}").lower()


def safe_text(obj, default: str = "") -> str:
    """임의 객체를 안전한 str로 변환 (None/bytes 방지)"""
    if obj is None:
        return default
    if isinstance(obj, (bytes, bytearray)):
        return obj.decode("utf-8", errors="replace")
    return str(obj)


def safe_filename(name: str, default: str = "item") -> str:
    # 파일 시스템에 안전한 이름으로 변환
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", safe_text(name)).strip("._")
    return cleaned[:120] or default


def write_json(path: str, payload: Any) -> str:
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, ensure_ascii=False, default=str)
    return path


def read_json(path: str) -> Any:
    with open(path, "r", encoding="utf-8-sig") as f:
        return json.load(f)


def as_list(value) -> list:
    if value is None or value == "":
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


class Timer:
    """Simple elapsed-time counter."""

    def __init__(self):
        self.start_time = time.time()

    def elapsed(self) -> float:
        return round(time.time() - self.start_time, 2)
