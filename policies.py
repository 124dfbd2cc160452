# policies.py – 레이블 정책 / DLP 정책·규칙 / 자동 레이블 정책·규칙 내보내기 · 가져오기
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from errors import ComplianceError, NotFoundError
from guid_map import GuidMap
from labels import Label
from utils import as_list, is_guid, normalize_id, read_json, safe_text, utc_now_iso, write_json

logger = logging.getLogger(__name__)

TEST_MODE = "TestWithoutNotifications"

LOCATION_FIELDS = (
    "ExchangeLocation", "SharePointLocation", "OneDriveLocation", "TeamsLocation",
    "EndpointDlpLocation", "ModernGroupLocation", "PowerBIDlpLocation",
    "OnPremisesScannerDlpLocation", "ThirdPartyAppDlpLocation",
)

DLP_RULE_FIELDS = (
    "Comment", "Priority", "Disabled", "ContentContainsSensitiveInformation", "BlockAccess",
    "BlockAccessScope", "AccessScope", "NotifyUser", "NotifyPolicyTipCustomText", "NotifyEmailCustomText",
    "GenerateIncidentReport", "IncidentReportContent", "GenerateAlert", "ReportSeverityLevel", "AdvancedRule",
)

AUTOLABEL_RULE_FIELDS = (
    "Comment", "Disabled", "Workload", "ContentContainsSensitiveInformation", "AccessScope",
)


@dataclass(frozen=True)
class PolicyKind:
    component: str
    noun: str
    file_name: str
    rule_fields: Optional[Tuple[str, ...]] = None
    label_field: Optional[str] = None
    has_mode: bool = True

    def cmdlet(self, verb: str, rule: bool = False) -> str:
        return f"{verb}-{self.noun}{'Rule' if rule else 'Policy'}"


LABEL_POLICIES = PolicyKind("LabelPolicies", "Label", "label_policies.json", label_field="Labels", has_mode=False)
DLP_POLICIES = PolicyKind("DLPPolicies", "DlpCompliance", "dlp_policies.json", rule_fields=DLP_RULE_FIELDS)
AUTOLABEL_POLICIES = PolicyKind("AutoLabelPolicies", "AutoSensitivityLabel", "autolabel_policies.json",
                                rule_fields=AUTOLABEL_RULE_FIELDS, label_field="ApplySensitivityLabel")


# ─────────────────────────────────────────────────────────
# 변환 헬퍼
# ─────────────────────────────────────────────────────────
def _names(value) -> List[str]:
    out = []
    for v in as_list(value):
        if isinstance(v, dict):
            v = v.get("Name") or v.get("DisplayName") or v.get("ImmutableIdentity")
        if v:
            out.append(safe_text(v))
    return out


def _locations(record: Dict) -> Dict[str, List[str]]:
    return {f: _names(record.get(f)) for f in LOCATION_FIELDS if _names(record.get(f))}


def strip_sensitive_type_ids(value) -> List[Dict]:
    """SIT 참조는 이름으로 이식 (id / rulePackId 는 테넌트마다 다름)"""
    out = []
    for item in as_list(value):
        if isinstance(item, dict):
            out.append({k: v for k, v in item.items() if k.lower() not in ("id", "rulepackid")})
    return out


def remap_label_refs(refs, guid_map: GuidMap, source_labels: Optional[List[Label]] = None) -> List[str]:
    """
    레이블 참조 재작성:
    GUID 맵에 있으면 대상 ID, 원본 레이블 목록의 GUID 이면 그 Name, 아니면 그대로
    """
    by_id = {normalize_id(l.id): l for l in (source_labels or []) if l.id}
    out = []
    for ref in _names(refs):
        mapped = guid_map.get(ref)
        if mapped:
            out.append(mapped)
        elif is_guid(ref) and normalize_id(ref) in by_id:
            out.append(by_id[normalize_id(ref)].name)
        else:
            out.append(ref)
    return out


def _get_or_none(session, cmdlet: str, identity: str) -> Optional[Dict]:
    try:
        rows = session.invoke(cmdlet, Identity=identity)
    except NotFoundError:
        return None
    return rows[0] if rows else None


# ─────────────────────────────────────────────────────────
# 내보내기
# ─────────────────────────────────────────────────────────
def _policy_record(kind: PolicyKind, r: Dict) -> Dict:
    rec = {"Name": safe_text(r.get("Name")), "Guid": safe_text(r.get("Guid") or r.get("Identity")),
           "Comment": safe_text(r.get("Comment"))}
    if kind.has_mode:
        rec["Mode"] = r.get("Mode")
    if "Priority" in r:
        rec["Priority"] = r.get("Priority")
    if kind.label_field:
        rec[kind.label_field] = _names(r.get(kind.label_field))
    if kind is LABEL_POLICIES and r.get("Settings") is not None:
        rec["Settings"] = r.get("Settings")
    rec.update(_locations(r))
    return rec


def _rule_record(kind: PolicyKind, r: Dict) -> Dict:
    rec = {"Name": safe_text(r.get("Name")), "Policy": safe_text(r.get("ParentPolicyName") or r.get("Policy"))}
    for f in kind.rule_fields or ():
        if r.get(f) is not None:
            rec[f] = r[f]
    if "ContentContainsSensitiveInformation" in rec:
        rec["ContentContainsSensitiveInformation"] = strip_sensitive_type_ids(rec["ContentContainsSensitiveInformation"])
    return rec


def export_policies(session, kind: PolicyKind, path: str) -> int:
    policies = [_policy_record(kind, r) for r in session.invoke(kind.cmdlet("Get"))]
    rules = [_rule_record(kind, r) for r in session.invoke(kind.cmdlet("Get", rule=True))] if kind.rule_fields else []
    write_json(path, {"ExportedAt": utc_now_iso(), "Policies": policies, "Rules": rules})
    logger.info("exported %d %s and %d rule(s) to %s", len(policies), kind.component, len(rules), path)
    return len(policies)


def export_label_policies(session, path: str) -> int:
    return export_policies(session, LABEL_POLICIES, path)


def export_dlp_policies(session, path: str) -> int:
    return export_policies(session, DLP_POLICIES, path)


def export_autolabel_policies(session, path: str) -> int:
    return export_policies(session, AUTOLABEL_POLICIES, path)


# ─────────────────────────────────────────────────────────
# 가져오기
# ─────────────────────────────────────────────────────────
def _create_params(kind: PolicyKind, p: Dict, guid_map: GuidMap, source_labels, test_mode: bool) -> Dict:
    params: Dict[str, object] = {}
    if p.get("Comment"):
        params["Comment"] = p["Comment"]
    if kind.has_mode:
        params["Mode"] = TEST_MODE if test_mode else (p.get("Mode") or None)
    if kind.label_field:
        labels = remap_label_refs(p.get(kind.label_field), guid_map, source_labels)
        params[kind.label_field] = labels if kind is LABEL_POLICIES else (labels[0] if labels else None)
    for f in LOCATION_FIELDS:
        if p.get(f):
            params[f] = p[f]
    return params


def _update_params(kind: PolicyKind, create: Dict) -> Dict:
    params = {k: v for k, v in create.items() if k in ("Comment", "Mode", "ApplySensitivityLabel")}
    if kind is LABEL_POLICIES and create.get("Labels"):
        params["AddLabels"] = create["Labels"]
    return params


def _rule_params(kind: PolicyKind, r: Dict) -> Dict:
    return {f: r[f] for f in kind.rule_fields or () if r.get(f) is not None}


def import_policies(session, kind: PolicyKind, path: str, guid_map: Optional[GuidMap] = None,
                    source_labels: Optional[List[Label]] = None, force: bool = False,
                    test_mode: bool = False) -> Dict:
    """
    정책 먼저 생성/갱신 → 전파 대기 → 규칙 생성/갱신.
    기존 정책은 force 가 아니면 건너뜀 (해당 규칙도 건너뜀).
    """
    data = read_json(path)
    guid_map = guid_map if guid_map is not None else GuidMap()
    policy_results, rule_results = [], []
    ready = set()

    for p in data.get("Policies", []):
        name = p.get("Name")
        entry = {"Name": name}
        if not name:
            entry.update(Status="Skipped", Reason="record has no Name")
            logger.warning("%s: skipping a policy record without a Name", kind.component)
            policy_results.append(entry)
            continue
        try:
            params = _create_params(kind, p, guid_map, source_labels, test_mode)
            existing = _get_or_none(session, kind.cmdlet("Get"), name)
            if existing is None:
                session.invoke(kind.cmdlet("New"), Name=name, **params)
                entry["Status"] = "Created"
                ready.add(name)
            elif force:
                session.invoke(kind.cmdlet("Set"), Identity=name, **_update_params(kind, params))
                entry["Status"] = "Updated"
                ready.add(name)
            else:
                entry["Status"] = "Exists"
        except ComplianceError as e:
            entry.update(Status="Failed", Error=str(e))
            logger.error("%s '%s' failed: %s", kind.component, name, e)
        policy_results.append(entry)

    if ready:
        session.wait_for_propagation()

    for r in data.get("Rules", []):
        name, parent = r.get("Name"), r.get("Policy")
        entry = {"Name": name, "Policy": parent}
        if not name:
            entry.update(Status="Skipped", Reason="record has no Name")
            logger.warning("%s: skipping a rule record without a Name", kind.component)
            rule_results.append(entry)
            continue
        if parent not in ready:
            entry.update(Status="Skipped", Reason="parent policy was not created or updated")
            rule_results.append(entry)
            continue
        try:
            params = _rule_params(kind, r)
            existing = _get_or_none(session, kind.cmdlet("Get", rule=True), name)
            if existing is None:
                session.invoke(kind.cmdlet("New", rule=True), Name=name, Policy=parent, **params)
                entry["Status"] = "Created"
            else:
                session.invoke(kind.cmdlet("Set", rule=True), Identity=name, **params)
                entry["Status"] = "Updated"
        except ComplianceError as e:
            entry.update(Status="Failed", Error=str(e))
            logger.error("%s rule '%s' failed: %s", kind.component, name, e)
        rule_results.append(entry)

    failed = any(x["Status"] == "Failed" for x in policy_results + rule_results)
    logger.info("%s import: %d policies, %d rules%s", kind.component, len(policy_results), len(rule_results),
                " (with failures)" if failed else "")
    return {"Policies": policy_results, "Rules": rule_results, "Failed": failed}


def import_label_policies(session, path: str, **kwargs) -> Dict:
    kwargs.pop("test_mode", None)
    return import_policies(session, LABEL_POLICIES, path, **kwargs)


def import_dlp_policies(session, path: str, **kwargs) -> Dict:
    return import_policies(session, DLP_POLICIES, path, **kwargs)


def import_autolabel_policies(session, path: str, **kwargs) -> Dict:
    return import_policies(session, AUTOLABEL_POLICIES, path, **kwargs)
