# backup.py – 구성 요소별 백업 / 복원 + manifest (Success / Failed / Skipped / NotFound)
import logging
import os
from typing import Callable, Dict, List, Optional, Tuple

import labels as labels_mod
import policies
import sits
from guid_map import GuidMap
from utils import Timer, read_json, utc_now_iso, write_json

logger = logging.getLogger(__name__)

MANIFEST_FILE = "backup_manifest.json"
RESTORE_MANIFEST_FILE = "restore_manifest.json"
MANIFEST_VERSION = "1.0"

SITS = "SensitiveInfoTypes"
LABELS = "Labels"
LABEL_POLICIES = "LabelPolicies"
DLP = "DLPPolicies"
AUTOLABEL = "AutoLabelPolicies"

COMPONENTS = (SITS, LABELS, LABEL_POLICIES, DLP, AUTOLABEL)

ARTIFACTS = {
    SITS: "sits",
    LABELS: "labels.json",
    LABEL_POLICIES: policies.LABEL_POLICIES.file_name,
    DLP: policies.DLP_POLICIES.file_name,
    AUTOLABEL: policies.AUTOLABEL_POLICIES.file_name,
}


def _overall(components: Dict[str, Dict]) -> str:
    statuses = [c.get("Status") for c in components.values()]
    if "Failed" not in statuses:
        return "Success"
    if all(s in ("Failed", "Skipped") for s in statuses):
        return "Failed"
    return "PartialFailure"


def _run_component(name: str, fn: Callable[[], int]) -> Dict:
    timer = Timer()
    try:
        count = fn()
    except Exception as e:  # 한 구성 요소 실패가 전체 백업을 중단하지 않음
        logger.exception("%s backup failed", name)
        return {"Status": "Failed", "Error": str(e), "ElapsedSeconds": timer.elapsed()}
    if not count:
        logger.info("%s: nothing to back up", name)
        return {"Status": "NotFound", "Count": 0, "ElapsedSeconds": timer.elapsed()}
    logger.info("%s: backed up %d object(s)", name, count)
    return {"Status": "Success", "Count": count, "File": ARTIFACTS[name], "ElapsedSeconds": timer.elapsed()}


def run_backup(session, out_dir: str, skip_sits: bool = False, skip_labels: bool = False,
               skip_dlp: bool = False, skip_autolabel: bool = False) -> Dict:
    """
    전체 백업. skip_labels 는 레이블 정책도 함께 건너뜀.
    건너뛴 구성 요소는 파일을 만들지 않음.
    """
    os.makedirs(out_dir, exist_ok=True)
    timer = Timer()
    path = lambda name: os.path.join(out_dir, ARTIFACTS[name])

    steps: List[Tuple[str, bool, Callable[[], int]]] = [
        (SITS, skip_sits, lambda: sits.export_custom_sits(session, path(SITS))["EntityCount"]),
        (LABELS, skip_labels, lambda: len(labels_mod.export_labels(session, path(LABELS)))),
        (LABEL_POLICIES, skip_labels, lambda: policies.export_label_policies(session, path(LABEL_POLICIES))),
        (DLP, skip_dlp, lambda: policies.export_dlp_policies(session, path(DLP))),
        (AUTOLABEL, skip_autolabel, lambda: policies.export_autolabel_policies(session, path(AUTOLABEL))),
    ]

    components: Dict[str, Dict] = {}
    for name, skipped, fn in steps:
        if skipped:
            logger.info("%s: skipped", name)
            components[name] = {"Status": "Skipped"}
            continue
        components[name] = _run_component(name, fn)

    manifest = {
        "ManifestVersion": MANIFEST_VERSION,
        "CreatedAt": utc_now_iso(),
        "Organization": getattr(session, "organization", ""),
        "Components": components,
        "Status": _overall(components),
        "ElapsedSeconds": timer.elapsed(),
    }
    write_json(os.path.join(out_dir, MANIFEST_FILE), manifest)
    logger.info("backup finished: %s in %ss", manifest["Status"], manifest["ElapsedSeconds"])
    return manifest


def run_restore(session, backup_dir: str, force: bool = False, test_mode: bool = False,
                confirm: Optional[Callable[[str], bool]] = None) -> Dict:
    """
    백업 manifest 기준으로 성공한 구성 요소만 의존 순서대로 복원
    (SIT → 레이블 → 레이블 정책 → DLP → 자동 레이블). GUID 맵은 전체 실행에서 공유.
    """
    manifest = read_json(os.path.join(backup_dir, MANIFEST_FILE))
    backed_up = manifest.get("Components", {})
    guid_map = GuidMap()
    timer = Timer()
    path = lambda name: os.path.join(backup_dir, ARTIFACTS[name])
    source_labels = labels_mod.load_labels(path(LABELS)) if os.path.exists(path(LABELS)) else []

    steps = [
        (SITS, lambda: sits.import_custom_sits(session, path(SITS), force=force, confirm=confirm, guid_map=guid_map)),
        (LABELS, lambda: labels_mod.import_labels(session, source_labels, force=force, guid_map=guid_map)),
        (LABEL_POLICIES, lambda: policies.import_label_policies(
            session, path(LABEL_POLICIES), guid_map=guid_map, source_labels=source_labels, force=force)),
        (DLP, lambda: policies.import_dlp_policies(
            session, path(DLP), guid_map=guid_map, force=force, test_mode=test_mode)),
        (AUTOLABEL, lambda: policies.import_autolabel_policies(
            session, path(AUTOLABEL), guid_map=guid_map, source_labels=source_labels, force=force,
            test_mode=test_mode)),
    ]

    components: Dict[str, Dict] = {}
    for name, fn in steps:
        status = backed_up.get(name, {}).get("Status")
        if status != "Success":
            components[name] = {"Status": "Skipped", "Reason": f"backup status {status or 'missing'}"}
            continue
        step_timer = Timer()
        try:
            result = fn()
        except Exception as e:  # 구성 요소 단위로 기록하고 다음 단계 진행
            logger.exception("%s restore failed", name)
            components[name] = {"Status": "Failed", "Error": str(e), "ElapsedSeconds": step_timer.elapsed()}
            continue
        components[name] = {
            "Status": "Failed" if result.get("Failed") else "Success",
            "Details": result,
            "ElapsedSeconds": step_timer.elapsed(),
        }

    restore = {
        "ManifestVersion": MANIFEST_VERSION,
        "RestoredAt": utc_now_iso(),
        "SourceOrganization": manifest.get("Organization", ""),
        "TargetOrganization": getattr(session, "organization", ""),
        "TestMode": test_mode,
        "Components": components,
        "GuidMap": guid_map.as_dict(),
        "Status": _overall(components),
        "ElapsedSeconds": timer.elapsed(),
    }
    write_json(os.path.join(backup_dir, RESTORE_MANIFEST_FILE), restore)
    logger.info("restore finished: %s in %ss", restore["Status"], restore["ElapsedSeconds"])
    return restore
