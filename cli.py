# cli.py – 명령줄 진입점 (종료 코드 0 = 성공, 1 = 실패 / 검증 차단 / 가드 차단)
import argparse
import json
import logging
import os
import sys
from datetime import datetime
from typing import Dict, List, Optional

import backup
import labels
import policies
import sits
import storage_logs
import tenant_guard
from certs import new_app_certificate
from compliance import connect
from config import CONFIG
from errors import ComplianceError
from teams import build_run_summary, send_teams_message

logger = logging.getLogger("purview")


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, (level or "INFO").upper(), logging.INFO),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _settings(args) -> Dict:
    overrides = {
        "ORGANIZATION": args.organization,
        "TENANT_ID": args.tenant_id,
        "CLIENT_ID": args.app_id,
        "AUTH_MODE": args.auth,
        "CERT_PATH": args.certificate_path,
        "CERT_THUMBPRINT": args.thumbprint,
        "PROPAGATION_DELAY": args.propagation_delay,
    }
    cfg = dict(CONFIG)
    cfg.update({k: v for k, v in overrides.items() if v is not None})
    return cfg


def _guard(operation: str, cfg: Dict) -> None:
    tenant_guard.check(operation, cfg.get("ORGANIZATION", ""))


def _confirm(message: str) -> bool:
    if not sys.stdin.isatty():
        return False
    answer = input(f"{message} [y/N] ").strip().lower()
    return answer in ("y", "yes")


def _print(result) -> None:
    print(json.dumps(result, indent=2, ensure_ascii=False, default=str))


def _notify(title: str, manifest: Dict) -> None:
    try:
        send_teams_message(title, build_run_summary(manifest), status=manifest.get("Status", ""))
    except Exception as e:  # 알림 실패는 실행 결과에 영향 없음
        logger.warning("Teams notification failed: %s", e)


# ─────────────────────────────────────────────────────────
# 명령
# ─────────────────────────────────────────────────────────
def cmd_backup(args) -> bool:
    cfg = _settings(args)
    _guard("backup", cfg)
    out_dir = args.output or f"purview-backup-{datetime.now().strftime('%Y%m%d-%H%M%S')}"
    with connect(cfg) as session:
        manifest = backup.run_backup(session, out_dir, skip_sits=args.skip_sits, skip_labels=args.skip_labels,
                                     skip_dlp=args.skip_dlp, skip_autolabel=args.skip_autolabel)
    _print(manifest)
    if args.upload:
        from storage_blob import upload_directory
        upload_directory(out_dir, prefix=os.path.basename(os.path.abspath(out_dir)))
    if args.notify:
        _notify("Purview backup", manifest)
    return manifest["Status"] == "Success"


def cmd_restore(args) -> bool:
    cfg = _settings(args)
    _guard("restore", cfg)
    with connect(cfg) as session:
        result = backup.run_restore(session, args.input, force=args.force, test_mode=args.test_mode,
                                    confirm=_confirm)
    _print(result)
    if args.notify:
        _notify("Purview restore", result)
    return result["Status"] == "Success"


def cmd_export_sits(args) -> bool:
    cfg = _settings(args)
    _guard("export", cfg)
    with connect(cfg) as session:
        report = sits.export_custom_sits(session, args.output)
    _print(report)
    return not report["WillFailImport"]


def cmd_validate_sits(args) -> bool:
    report = sits.validate_export(args.input)
    _print(report)
    return report["Ok"]


def cmd_import_sits(args) -> bool:
    cfg = _settings(args)
    _guard("import", cfg)
    with connect(cfg) as session:
        result = sits.import_custom_sits(session, args.input, force=args.force, new_guids=args.new_guids,
                                         confirm=_confirm)
    _print(result)
    return not result["Failed"]


def cmd_export_labels(args) -> bool:
    cfg = _settings(args)
    _guard("export", cfg)
    with connect(cfg) as session:
        exported = labels.export_labels(session, args.output)
    _print({"Labels": len(exported), "File": args.output})
    return True


def cmd_import_labels(args) -> bool:
    cfg = _settings(args)
    _guard("import", cfg)
    with connect(cfg) as session:
        result = labels.import_labels(session, args.input, force=args.force)
    _print(result)
    return not result["Failed"]


def cmd_export_policies(args) -> bool:
    cfg = _settings(args)
    _guard("export", cfg)
    kinds = [k for k, skip in ((policies.LABEL_POLICIES, args.skip_labels), (policies.DLP_POLICIES, args.skip_dlp),
                               (policies.AUTOLABEL_POLICIES, args.skip_autolabel)) if not skip]
    counts = {}
    with connect(cfg) as session:
        for kind in kinds:
            counts[kind.component] = policies.export_policies(session, kind, os.path.join(args.output, kind.file_name))
    _print(counts)
    return True


def cmd_import_policies(args) -> bool:
    cfg = _settings(args)
    _guard("import", cfg)
    labels_file = args.labels_file or os.path.join(args.input, "labels.json")
    source_labels = labels.load_labels(labels_file) if os.path.exists(labels_file) else []
    results = {}
    with connect(cfg) as session:
        for kind in (policies.LABEL_POLICIES, policies.DLP_POLICIES, policies.AUTOLABEL_POLICIES):
            path = os.path.join(args.input, kind.file_name)
            if not os.path.exists(path):
                continue
            results[kind.component] = policies.import_policies(
                session, kind, path, source_labels=source_labels, force=args.force,
                test_mode=args.test_mode and kind.has_mode)
    _print(results)
    return bool(results) and not any(r["Failed"] for r in results.values())


def cmd_new_certificate(args) -> bool:
    info = new_app_certificate(subject=args.subject, out_dir=args.output, years=args.years, password=args.password)
    _print(info.__dict__)
    print(f"Upload {info.cer_path} to the app registration, then set PURVIEW_CERT_THUMBPRINT={info.thumbprint}",
          file=sys.stderr)
    return True


def cmd_history(args) -> bool:
    cfg = _settings(args)
    _print(storage_logs.query_recent(cfg.get("ORGANIZATION") or "default", top=args.top))
    return True


# ─────────────────────────────────────────────────────────
# 파서
# ─────────────────────────────────────────────────────────
def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--organization", help="tenant domain, e.g. contoso.onmicrosoft.com")
    common.add_argument("--tenant-id")
    common.add_argument("--app-id", help="application (client) id")
    common.add_argument("--auth", choices=("interactive", "device-code", "certificate"))
    common.add_argument("--certificate-path", help=".pem (key + certificate) or .pfx")
    common.add_argument("--thumbprint")
    common.add_argument("--propagation-delay", type=int, help="seconds to wait after writes")
    common.add_argument("--log-level", default=CONFIG.get("LOG_LEVEL", "INFO"))

    parser = argparse.ArgumentParser(prog="purview",
                                     description="Back up, export and migrate Microsoft Purview configuration.")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("backup", parents=[common], help="back up every component with a manifest")
    p.add_argument("--output")
    p.add_argument("--skip-sits", action="store_true")
    p.add_argument("--skip-labels", action="store_true", help="also skips label policies")
    p.add_argument("--skip-dlp", action="store_true")
    p.add_argument("--skip-autolabel", action="store_true")
    p.add_argument("--upload", action="store_true", help="upload the backup folder to Blob storage")
    p.add_argument("--notify", action="store_true", help="post a summary to Teams")
    p.set_defaults(func=cmd_backup)

    p = sub.add_parser("restore", parents=[common], help="restore a backup folder into the connected tenant")
    p.add_argument("--input", required=True)
    p.add_argument("--force", action="store_true")
    p.add_argument("--test-mode", action="store_true", help="create policies in TestWithoutNotifications mode")
    p.add_argument("--notify", action="store_true")
    p.set_defaults(func=cmd_restore)

    p = sub.add_parser("export-sits", parents=[common], help="export custom SIT rule packs and dictionaries")
    p.add_argument("--output", default="sits")
    p.set_defaults(func=cmd_export_sits)

    p = sub.add_parser("validate-sits", parents=[common], help="validate an export folder offline")
    p.add_argument("--input", required=True)
    p.set_defaults(func=cmd_validate_sits)

    p = sub.add_parser("import-sits", parents=[common], help="import exported rule packs and dictionaries")
    p.add_argument("--input", required=True)
    p.add_argument("--force", action="store_true")
    p.add_argument("--new-guids", action="store_true", help="assign fresh rule pack and entity GUIDs")
    p.set_defaults(func=cmd_import_sits)

    p = sub.add_parser("export-labels", parents=[common])
    p.add_argument("--output", default="labels.json")
    p.set_defaults(func=cmd_export_labels)

    p = sub.add_parser("import-labels", parents=[common])
    p.add_argument("--input", required=True)
    p.add_argument("--force", action="store_true")
    p.set_defaults(func=cmd_import_labels)

    p = sub.add_parser("export-policies", parents=[common])
    p.add_argument("--output", default=".")
    p.add_argument("--skip-labels", action="store_true")
    p.add_argument("--skip-dlp", action="store_true")
    p.add_argument("--skip-autolabel", action="store_true")
    p.set_defaults(func=cmd_export_policies)

    p = sub.add_parser("import-policies", parents=[common])
    p.add_argument("--input", required=True)
    p.add_argument("--labels-file", help="source labels.json used to translate label GUIDs to names")
    p.add_argument("--force", action="store_true")
    p.add_argument("--test-mode", action="store_true")
    p.set_defaults(func=cmd_import_policies)

    p = sub.add_parser("new-certificate", parents=[common], help="create a self-signed app-only certificate")
    p.add_argument("--subject", default="CN=PurviewMigration")
    p.add_argument("--output", default=".")
    p.add_argument("--years", type=int, default=2)
    p.add_argument("--password")
    p.set_defaults(func=cmd_new_certificate)

    p = sub.add_parser("history", parents=[common], help="recent runs from the activity table")
    p.add_argument("--top", type=int, default=20)
    p.set_defaults(func=cmd_history)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    _setup_logging(args.log_level)
    organization = args.organization or CONFIG.get("ORGANIZATION", "")
    try:
        ok = args.func(args)
    except ComplianceError as e:
        logger.error("%s", e)
        if e.hint:
            logger.error("hint: %s", e.hint)
        ok = False
    except (OSError, RuntimeError, ValueError) as e:
        logger.error("%s", e)
        ok = False

    if args.command != "history":
        storage_logs.log_activity(organization, args.command, "INFO" if ok else "ERROR",
                                  f"{args.command} {'succeeded' if ok else 'failed'}")
    return 0 if ok else 1


def _entry(command: str):
    def run(argv: Optional[List[str]] = None) -> int:
        return main([command] + list(sys.argv[1:] if argv is None else argv))
    run.__name__ = f"{command.replace('-', '_')}_main"
    return run


backup_main = _entry("backup")
restore_main = _entry("restore")
export_sits_main = _entry("export-sits")
import_sits_main = _entry("import-sits")
validate_sits_main = _entry("validate-sits")
export_labels_main = _entry("export-labels")
import_labels_main = _entry("import-labels")
export_policies_main = _entry("export-policies")
import_policies_main = _entry("import-policies")
new_certificate_main = _entry("new-certificate")


if __name__ == "__main__":
    sys.exit(main())
