# labels.py – 민감도 레이블 내보내기 / 계층 재구성 (부모 → 자식 순서, GUID 매핑)
import json
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from errors import AlreadyExistsError, ComplianceError, NotFoundError
from guid_map import GuidMap
from utils import as_list, normalize_id, read_json, safe_text, utc_now_iso, write_json

logger = logging.getLogger(__name__)

_EMPTY_GUID = "00000000-0000-0000-0000-000000000000"

# LabelActions 설정 키 → New-Label 파라미터 접미사
_MARKING_KEYS = {
    "text": "Text",
    "fontsize": "FontSize",
    "fontcolor": "FontColor",
    "alignment": "Alignment",
    "margin": "Margin",
    "layout": "Layout",
}


def _parent(value) -> Optional[str]:
    v = safe_text(value).strip()
    return None if not v or normalize_id(v) == _EMPTY_GUID else v


def _same_parent(a: Optional[str], b: Optional[str]) -> bool:
    return normalize_id(a) == normalize_id(b)


def content_marking(label_actions) -> Dict[str, object]:
    """Translate Get-Label ``LabelActions`` into header/footer/watermark New-Label parameters."""
    params: Dict[str, object] = {}
    for raw in as_list(label_actions):
        try:
            action = json.loads(raw) if isinstance(raw, str) else dict(raw)
        except ValueError:
            logger.warning("unreadable label action skipped: %.80s", raw)
            continue
        kind = safe_text(action.get("Type")).lower()
        settings = {safe_text(s.get("Key")).lower(): s.get("Value") for s in action.get("Settings") or []}
        if kind == "applycontentmarking":
            where = safe_text(action.get("SubType") or settings.get("placement")).lower()
            prefix = "ApplyContentMarkingFooter" if "footer" in where else "ApplyContentMarkingHeader"
        elif kind == "applywatermarking":
            prefix = "ApplyWaterMarking"
        else:
            continue
        params[prefix + "Enabled"] = True
        for key, suffix in _MARKING_KEYS.items():
            if settings.get(key) not in (None, ""):
                params[prefix + suffix] = settings[key]
    return params


@dataclass
class Label:
    id: str
    name: str
    display_name: str
    parent_id: Optional[str] = None
    priority: Optional[int] = None
    tooltip: str = ""
    comment: str = ""
    content_type: List[str] = field(default_factory=list)
    content_marking: Dict[str, object] = field(default_factory=dict)

    @classmethod
    def from_record(cls, record: Dict) -> "Label":
        """Get-Label 결과 또는 내보낸 labels.json 항목"""
        marking = record.get("ContentMarking")
        if marking is None:
            marking = content_marking(record.get("LabelActions"))
        ctype = record.get("ContentType")
        if isinstance(ctype, str):
            ctype = [c.strip() for c in ctype.split(",") if c.strip()]
        priority = record.get("Priority")
        return cls(
            id=safe_text(record.get("Guid") or record.get("ImmutableId") or record.get("Id")),
            name=safe_text(record.get("Name")),
            display_name=safe_text(record.get("DisplayName") or record.get("Name")),
            parent_id=_parent(record.get("ParentId")),
            priority=int(priority) if priority not in (None, "") else None,
            tooltip=safe_text(record.get("Tooltip")),
            comment=safe_text(record.get("Comment")),
            content_type=list(ctype or []),
            content_marking=dict(marking or {}),
        )

    def to_dict(self) -> Dict:
        return {
            "Guid": self.id,
            "Name": self.name,
            "DisplayName": self.display_name,
            "ParentId": self.parent_id,
            "Priority": self.priority,
            "Tooltip": self.tooltip,
            "Comment": self.comment,
            "ContentType": self.content_type,
            "ContentMarking": self.content_marking,
        }

    def create_params(self) -> Dict[str, object]:
        params: Dict[str, object] = {
            "DisplayName": self.display_name,
            "Tooltip": self.tooltip or self.display_name,
        }
        if self.comment:
            params["Comment"] = self.comment
        if self.content_type:
            params["ContentType"] = ", ".join(self.content_type)
        params.update(self.content_marking)
        return params


# ─────────────────────────────────────────────────────────
# 조회: 표시 이름 + 부모 ID
# ─────────────────────────────────────────────────────────
def find_label(labels: List[Label], display_name: str, parent_id: Optional[str] = None) -> Optional[Label]:
    """
    Resolve a label by display name, scoped to ``parent_id``.

    A top-level label and a sub-label may share a display name. The first
    name match is accepted only when its parent matches; otherwise the list
    is rescanned on both display name and parent before giving up.
    """
    wanted = display_name.lower()
    first = next((l for l in labels if l.display_name.lower() == wanted), None)
    if first is None:
        return None
    if _same_parent(first.parent_id, parent_id):
        return first
    return next((l for l in labels
                 if l.display_name.lower() == wanted and _same_parent(l.parent_id, parent_id)), None)


def lookup_label(session, display_name: str, parent_id: Optional[str] = None) -> Optional[Label]:
    try:
        rows = session.invoke("Get-Label", Identity=display_name)
    except NotFoundError:
        rows = []
    if rows:
        candidate = Label.from_record(rows[0])
        if candidate.display_name.lower() == display_name.lower() and _same_parent(candidate.parent_id, parent_id):
            return candidate
    # 이름이 같은 다른 범위의 레이블일 수 있으므로 전체 목록에서 부모까지 비교
    return find_label(fetch_labels(session), display_name, parent_id)


def fetch_labels(session) -> List[Label]:
    return [Label.from_record(r) for r in session.invoke("Get-Label")]


def order_by_hierarchy(labels: List[Label]) -> List[List[Label]]:
    """Tiers of labels: tier 0 has no parent in the set, tier N's parents are in tier N-1."""
    by_id = {normalize_id(l.id): l for l in labels}
    depth: Dict[str, int] = {}

    def _depth(label: Label, seen=()) -> int:
        key = normalize_id(label.id)
        if key in depth:
            return depth[key]
        parent = by_id.get(normalize_id(label.parent_id)) if label.parent_id else None
        d = 0 if parent is None or key in seen else _depth(parent, seen + (key,)) + 1
        depth[key] = d
        return d

    tiers: Dict[int, List[Label]] = {}
    for l in labels:
        tiers.setdefault(_depth(l), []).append(l)
    return [sorted(tiers[d], key=lambda x: (x.priority is None, x.priority or 0)) for d in sorted(tiers)]


# ─────────────────────────────────────────────────────────
# 내보내기 / 가져오기
# ─────────────────────────────────────────────────────────
def export_labels(session, path: str) -> List[Label]:
    labels = [l for tier in order_by_hierarchy(fetch_labels(session)) for l in tier]
    write_json(path, {"ExportedAt": utc_now_iso(), "Labels": [l.to_dict() for l in labels]})
    logger.info("exported %d label(s) to %s", len(labels), path)
    return labels


def load_labels(path: str) -> List[Label]:
    data = read_json(path)
    rows = data.get("Labels", []) if isinstance(data, dict) else data
    return [Label.from_record(r) for r in rows]


def _import_one(session, label: Label, guid_map: GuidMap, force: bool) -> Dict:
    entry = {"Name": label.name, "DisplayName": label.display_name, "SourceId": label.id}
    target_parent = None
    if label.parent_id:
        target_parent = guid_map.get(label.parent_id)
        if target_parent is None:
            entry.update(Status="Failed", Error=f"parent label {label.parent_id} was not migrated")
            return entry

    existing = lookup_label(session, label.display_name, target_parent)
    if existing is not None:
        guid_map.record(label.id, existing.id, kind="label")
        entry["TargetId"] = existing.id
        if force:
            params = label.create_params()
            session.invoke("Set-Label", Identity=existing.id, **params)
            entry["Status"] = "Updated"
        else:
            entry["Status"] = "Exists"
        return entry

    try:
        rows = session.invoke("New-Label", Name=label.name, ParentId=target_parent, **label.create_params())
    except AlreadyExistsError as e:
        # Name 은 테넌트 전체에서 고유 → 다른 부모 아래 같은 Name 이 있는 경우
        entry.update(Status="Failed", Error=str(e))
        return entry

    new_id = safe_text(rows[0].get("Guid") or rows[0].get("ImmutableId")) if rows else ""
    if not new_id:
        created = lookup_label(session, label.display_name, target_parent)
        new_id = created.id if created else ""
    if not new_id:
        entry.update(Status="Failed", Error="label created but its id could not be read back")
        return entry
    guid_map.record(label.id, new_id, kind="label")
    entry.update(Status="Created", TargetId=new_id)
    return entry


def import_labels(session, labels, force: bool = False, guid_map: Optional[GuidMap] = None) -> Dict:
    """
    부모 레이블을 모두 만든 뒤 자식 레이블 처리 (자식 생성에 부모의 대상 ID 필요).
    ``labels`` 는 labels.json 경로 또는 Label 목록.
    """
    if isinstance(labels, str):
        labels = load_labels(labels)
    guid_map = guid_map if guid_map is not None else GuidMap()
    results = []
    for depth, tier in enumerate(order_by_hierarchy(labels)):
        wrote = False
        for label in tier:
            try:
                entry = _import_one(session, label, guid_map, force)
            except ComplianceError as e:
                entry = {"Name": label.name, "DisplayName": label.display_name, "SourceId": label.id,
                         "Status": "Failed", "Error": str(e)}
            if entry["Status"] == "Failed":
                logger.error("label '%s' failed: %s", label.display_name, entry.get("Error"))
            else:
                logger.info("label '%s' (tier %d): %s", label.display_name, depth, entry["Status"])
            wrote = wrote or entry["Status"] in ("Created", "Updated")
            results.append(entry)
        if wrote:
            session.wait_for_propagation()

    return {
        "Labels": results,
        "GuidMap": guid_map.as_dict("label"),
        "Failed": any(r["Status"] == "Failed" for r in results),
    }
