# sits.py – 사용자 지정 SIT(규칙 팩) 내보내기 / 검증 / 가져오기
import base64
import glob
import logging
import os
from typing import Callable, Dict, Iterable, List, Optional, Union

from compliance import file_data
from dictionaries import (
    KeywordDictionary, ensure_dictionary, fetch_dictionaries, index_dictionaries, read_sidecars, write_sidecar
)
from errors import ComplianceError, ConflictError, NotFoundError, ValidationError
from guid_map import GuidMap
from rulepack import (
    RulePack, check_encoding, load_rule_pack, regenerate_ids, remap_ids, resolve_rule_packs
)
from utils import normalize_id, safe_filename, safe_text, utc_now_iso, write_json

logger = logging.getLogger(__name__)

MICROSOFT_PUBLISHER = "Microsoft Corporation"
DICTIONARY_DIR = "dictionaries"
REPORT_FILE = "sit_export_report.json"


def _rule_pack_payload(record: Dict) -> Optional[Union[bytes, str]]:
    xml = record.get("ClassificationRuleCollectionXml")
    if xml:
        return xml
    raw = record.get("SerializedClassificationRuleCollection")
    if isinstance(raw, list):
        return bytes(raw)
    if isinstance(raw, str) and raw:
        return base64.b64decode(raw)
    return None


def is_microsoft_pack(pack: RulePack, record: Optional[Dict] = None) -> bool:
    record = record or {}
    publisher = safe_text(record.get("Publisher")) or pack.publisher_name
    return publisher == MICROSOFT_PUBLISHER or safe_text(record.get("RuleCollectionName")) == "Microsoft Rule Package"


def fetch_rule_packs(session, include_microsoft: bool = False) -> List[RulePack]:
    packs = []
    for r in session.invoke("Get-DlpSensitiveInformationTypeRulePackage"):
        payload = _rule_pack_payload(r)
        if payload is None:
            logger.warning("rule pack %s returned no XML payload; skipped", r.get("Identity"))
            continue
        pack = load_rule_pack(payload, source=safe_text(r.get("Identity") or r.get("RuleCollectionName")))
        if not include_microsoft and is_microsoft_pack(pack, r):
            continue
        packs.append(pack)
    return packs


def missing_sits(session, names: Iterable[str]) -> List[str]:
    """Names that do not resolve to a SIT on the connected tenant."""
    names = list(names)
    existing = {safe_text(r.get("Name")).lower() for r in session.invoke("Get-DlpSensitiveInformationType")}
    return [n for n in names if n.lower() not in existing]


# ─────────────────────────────────────────────────────────
# 내보내기
# ─────────────────────────────────────────────────────────
def export_custom_sits(session, out_dir: str) -> Dict:
    """
    규칙 팩 전체 + 키워드 사전 전체 조회 → 교차 참조 해석 →
    rulepack_<id>.xml (UTF-16 BOM), 참조된 사전별 사이드카, 보고서 작성
    """
    os.makedirs(out_dir, exist_ok=True)
    packs = fetch_rule_packs(session)
    dictionaries = index_dictionaries(fetch_dictionaries(session))
    logger.info("exporting %d custom rule pack(s); %d keyword dictionaries known", len(packs), len(dictionaries))

    resolution = resolve_rule_packs(packs, dictionaries)
    files, entity_count = [], 0
    for res in resolution.packs:
        path = os.path.join(out_dir, f"rulepack_{safe_filename(res.pack_id, 'unknown')}.xml")
        with open(path, "wb") as f:
            f.write(res.to_bytes())
        entity_count += len(res.as_pack().entity_names())
        files.append(os.path.basename(path))
        if res.injected:
            logger.info("pack %s: injected %d processor(s) from sibling packs", res.pack_id, len(res.injected))

    sidecars = []
    for ref in resolution.dictionary_refs:
        d = dictionaries[normalize_id(ref)]
        meta_path, terms_path = write_sidecar(d, os.path.join(out_dir, DICTIONARY_DIR))
        sidecars.append({"Identity": d.identity, "Name": d.name, "TermCount": len(d.terms),
                         "Files": [os.path.basename(meta_path), os.path.basename(terms_path)]})

    report = {
        "ExportedAt": utc_now_iso(),
        "RulePacks": [dict(r.as_report(), File=f) for r, f in zip(resolution.packs, files)],
        "Dictionaries": sidecars,
        "ProcessorConflicts": [
            {"ProcessorId": c.processor_id, "KeptFrom": c.kept_pack_id, "IgnoredFrom": c.ignored_pack_id}
            for c in resolution.conflicts
        ],
        "EntityCount": entity_count,
        "WillFailImport": resolution.will_fail_import,
    }
    write_json(os.path.join(out_dir, REPORT_FILE), report)
    if resolution.will_fail_import:
        for pack_id, ids in resolution.unresolved.items():
            logger.error("pack %s will fail import; unresolved: %s", pack_id, ", ".join(ids))
    return report


# ─────────────────────────────────────────────────────────
# 검증 (오프라인)
# ─────────────────────────────────────────────────────────
def _load_export(in_dir: str):
    paths = sorted(glob.glob(os.path.join(in_dir, "*.xml")))
    if not paths:
        raise NotFoundError(f"no rule pack files (*.xml) in {in_dir}")
    packs, issues = [], []
    for path in paths:
        with open(path, "rb") as f:
            raw = f.read()
        problem = check_encoding(raw)
        if problem:
            issues.append({"File": os.path.basename(path), "Id": "", "Problem": problem})
        packs.append(load_rule_pack(raw, source=path))
    return packs, issues


def validate_export(in_dir: str) -> Dict:
    """Check encoding, references and sidecars of an export folder without connecting."""
    packs, issues = _load_export(in_dir)
    try:
        dictionaries = read_sidecars(os.path.join(in_dir, DICTIONARY_DIR))
    except ValidationError as e:
        dictionaries = []
        issues.append({"File": DICTIONARY_DIR, "Id": ",".join(e.ids), "Problem": e.message})

    resolution = resolve_rule_packs(packs, index_dictionaries(dictionaries))
    for res in resolution.packs:
        name = os.path.basename(res.source)
        for ref in res.unresolved:
            issues.append({"File": name, "Id": ref, "Problem": "reference not defined in pack, dictionaries or built-ins"})
        for ref in res.injected:
            issues.append({"File": name, "Id": ref, "Problem": "pack is not self-contained; processor lives in a sibling pack"})
    return {"RulePacks": len(packs), "Dictionaries": len(dictionaries), "Issues": issues, "Ok": not issues}


# ─────────────────────────────────────────────────────────
# 가져오기
# ─────────────────────────────────────────────────────────
def import_custom_sits(session, in_dir: str, force: bool = False, new_guids: bool = False,
                       confirm: Optional[Callable[[str], bool]] = None,
                       guid_map: Optional[GuidMap] = None) -> Dict:
    """
    1) 사전 재생성 → GUID 매핑
    2) 규칙 팩의 사전 참조 재작성 (+ 선택: 새 GUID)
    3) 검증 실패 시 중단 (force 시 계속)
    4) 이름 충돌 사전 점검 (confirm 또는 force)
    5) 규칙 팩 생성/갱신
    """
    guid_map = guid_map if guid_map is not None else GuidMap()
    packs, issues = _load_export(in_dir)
    dictionaries: List[KeywordDictionary] = read_sidecars(os.path.join(in_dir, DICTIONARY_DIR))

    dict_results = []
    for d in dictionaries:
        target_id = ensure_dictionary(session, d, force=force)
        guid_map.record(d.identity, target_id, kind="dictionary")
        dict_results.append({"Name": d.name, "SourceIdentity": d.identity, "TargetIdentity": target_id,
                             "TermCount": len(d.terms)})
    if dictionaries:
        session.wait_for_propagation()

    prepared = []
    for pack in packs:
        root = remap_ids(pack.root, guid_map.as_dict("dictionary"))
        if new_guids:
            root, mapping = regenerate_ids(root)
            for src, dst in mapping.items():
                guid_map.record(src, dst, kind="rulepack")
        prepared.append(RulePack(root=root, source=pack.source))

    known_dictionaries = set(index_dictionaries(fetch_dictionaries(session)))
    known_dictionaries.update(v.lower() for v in guid_map.as_dict("dictionary").values())
    resolution = resolve_rule_packs(prepared, known_dictionaries)
    for res in resolution.packs:
        for ref in res.unresolved:
            issues.append({"File": os.path.basename(res.source), "Id": ref,
                           "Problem": "reference not defined in pack, dictionaries or built-ins"})

    if issues:
        for i in issues:
            logger.error("validation: %s %s %s", i["File"], i["Id"], i["Problem"])
        if not force:
            raise ValidationError(f"{len(issues)} validation issue(s) block the import; use --force to override",
                                  ids=[i["Id"] for i in issues if i["Id"]])
        logger.warning("continuing past %d validation issue(s) because force is set", len(issues))

    names = [n for res in resolution.packs for n in res.as_pack().entity_names().values() if n]
    absent = set(missing_sits(session, names)) if names else set()
    conflicts = [n for n in names if n not in absent]
    if conflicts and not force:
        msg = f"{len(conflicts)} SIT name(s) already exist on the target: {', '.join(conflicts)}"
        if confirm is None or not confirm(msg + ". Overwrite?"):
            raise ConflictError(msg, names=conflicts)

    existing_ids = {p.pack_id.lower() for p in fetch_rule_packs(session, include_microsoft=True)}
    results = []
    for res in resolution.packs:
        entry = {"RulePackId": res.pack_id, "Name": res.name, "File": os.path.basename(res.source)}
        cmdlet = ("Set-DlpSensitiveInformationTypeRulePackage" if res.pack_id.lower() in existing_ids
                  else "New-DlpSensitiveInformationTypeRulePackage")
        try:
            session.invoke(cmdlet, FileData=file_data(res.to_bytes()))
            entry["Status"] = "Updated" if cmdlet.startswith("Set-") else "Created"
            logger.info("%s rule pack %s (%s)", entry["Status"].lower(), res.pack_id, res.name)
        except ComplianceError as e:
            entry.update(Status="Failed", Error=str(e))
            logger.error("rule pack %s failed: %s", res.pack_id, e)
        results.append(entry)
    session.wait_for_propagation()

    return {
        "ImportedAt": utc_now_iso(),
        "RulePacks": results,
        "Dictionaries": dict_results,
        "Issues": issues,
        "Conflicts": conflicts,
        "GuidMap": guid_map.as_dict(),
        "Failed": any(r["Status"] == "Failed" for r in results),
    }
