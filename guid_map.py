# guid_map.py – 마이그레이션 1회 동안 유지되는 source → target 식별자 테이블
from typing import Dict, Iterable, List, Optional

from utils import normalize_id


class GuidMap:
    """Source id → target id table for a single migration run.

    Keys are compared case-insensitively so GUIDs printed by different
    cmdlets (upper/lower case, with or without braces) still match.
    """

    def __init__(self):
        self._map: Dict[str, str] = {}
        self._kinds: Dict[str, str] = {}

    def record(self, source_id: str, target_id: str, kind: str = "") -> None:
        if not source_id or not target_id:
            return
        key = normalize_id(source_id)
        self._map[key] = str(target_id)
        if kind:
            self._kinds[key] = kind

    def get(self, source_id: Optional[str]) -> Optional[str]:
        if not source_id:
            return None
        return self._map.get(normalize_id(source_id))

    def __contains__(self, source_id) -> bool:
        return self.get(source_id) is not None

    def __len__(self) -> int:
        return len(self._map)

    def remap(self, value: Optional[str]) -> Optional[str]:
        """Mapped id, or the value unchanged when the map has no entry."""
        mapped = self.get(value)
        return mapped if mapped is not None else value

    def remap_list(self, values: Iterable[str]) -> List[str]:
        return [self.remap(v) for v in values]

    def as_dict(self, kind: Optional[str] = None) -> Dict[str, str]:
        if kind is None:
            return dict(self._map)
        return {k: v for k, v in self._map.items() if self._kinds.get(k) == kind}
