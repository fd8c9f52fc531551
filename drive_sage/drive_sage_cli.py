#!/usr/bin/env python3
"""Command line front end for DriveSage.

Every command writes its JSON result to ``--output`` and prints a short
status envelope. Organizing is a dry run unless ``--execute`` is given.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

from drive_sage.drive_analysis_engine import (
    DEFAULT_LOG_FILE,
    AppSettings,
    DriveAnalysisService,
    ensure_parent,
    load_settings,
    now_utc_iso,
    parse_size_to_bytes,
    setup_logger,
    to_json_dict,
)
from drive_sage.file_organization_engine import (
    FileOrganizationService,
    OrganizationPlanner,
    operation_to_dict,
)

DEFAULT_EXPORT_DIR = Path.cwd() / "drive_sage_reports"


def export_json(path: Path, obj: Any) -> None:
    ensure_parent(path)
    path.write_text(json.dumps(obj, indent=2, ensure_ascii=True), encoding="utf-8")


def require_confirm(args: argparse.Namespace, message: str) -> bool:
    if getattr(args, "yes", False):
        return True
    ans = input(f"{message} [y/N]: ").strip().lower()
    return ans in {"y", "yes"}


def resolve_settings(args: argparse.Namespace) -> AppSettings:
    settings = load_settings(args.settings)
    overrides: dict[str, Any] = {}
    if getattr(args, "protected", None):
        overrides["protected_patterns"] = args.protected.split(",")
    if getattr(args, "large_threshold", None):
        overrides["large_file_threshold"] = parse_size_to_bytes(args.large_threshold)
    if getattr(args, "follow_symlinks", False):
        overrides["follow_symlinks"] = True
    if getattr(args, "organize_rules", None):
        overrides["organize_rules"] = args.organize_rules
    return settings.merged(overrides) if overrides else settings


def command_analyze(settings: AppSettings, args: argparse.Namespace) -> dict[str, Any]:
    return DriveAnalysisService(settings).analyze(args.root).to_dict()


def command_duplicates(settings: AppSettings, args: argparse.Namespace) -> dict[str, Any]:
    report = DriveAnalysisService(settings).analyze(args.root)
    return {
        "drive_path": report.drive_path,
        "count": len(report.duplicates),
        "duplicates": [to_json_dict(d) for d in report.duplicates],
    }


def command_plan(settings: AppSettings, args: argparse.Namespace) -> dict[str, Any]:
    report = DriveAnalysisService(settings).analyze(args.root)
    operations = OrganizationPlanner(settings.organize_rules).plan(report)
    return {
        "drive_path": report.drive_path,
        "generated_at": now_utc_iso(),
        "operations": [operation_to_dict(op) for op in operations],
    }


def command_organize(settings: AppSettings, args: argparse.Namespace) -> dict[str, Any]:
    plan_path = Path(args.plan)
    if not plan_path.exists():
        raise FileNotFoundError(f"Plan file not found: {plan_path}")
    data = json.loads(plan_path.read_text(encoding="utf-8"))
    records = data.get("operations", []) if isinstance(data, dict) else data
    if not isinstance(records, list):
        raise ValueError("Plan must be a list of operations or an object with 'operations'")

    dry_run = not args.execute
    if not dry_run and not require_confirm(args, f"Apply {len(records)} operations for real?"):
        dry_run = True
    return FileOrganizationService().organize(records, dry_run=dry_run).to_dict()


def command_delete(settings: AppSettings, args: argparse.Namespace) -> dict[str, Any]:
    if not require_confirm(args, f"Permanently delete {args.path}?"):
        raise RuntimeError("Delete cancelled")
    return FileOrganizationService().delete_file(args.path).to_dict()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="drive-sage",
        description="Analyze and organize a local cloud-drive folder",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument("--settings", default=None, help="JSON settings file")
    parser.add_argument("--log-file", default=str(DEFAULT_LOG_FILE), help="Log file")

    sub = parser.add_subparsers(dest="command", required=True)

    def add_scan_opts(p: argparse.ArgumentParser) -> None:
        p.add_argument("root", help="Drive folder to scan")
        p.add_argument("--protected", default=None, help="Comma separated protected name patterns")
        p.add_argument("--large-threshold", default=None, help="Large file threshold, e.g. 100MB")
        p.add_argument("--follow-symlinks", action="store_true", help="Follow symlinked entries")

    p = sub.add_parser("analyze", help="Full structural analysis")
    add_scan_opts(p)
    p.add_argument("--output", default=str(DEFAULT_EXPORT_DIR / "analysis_report.json"))

    p = sub.add_parser("duplicates", help="Name+size duplicate report")
    add_scan_opts(p)
    p.add_argument("--output", default=str(DEFAULT_EXPORT_DIR / "duplicates_report.json"))

    p = sub.add_parser("plan", help="Build an organize plan from a fresh analysis")
    add_scan_opts(p)
    p.add_argument("--organize-rules", default=None, help="JSON file mapping folder -> extensions")
    p.add_argument("--output", default=str(DEFAULT_EXPORT_DIR / "organize_plan.json"))

    p = sub.add_parser("organize", help="Run an organize plan (dry-run by default)")
    p.add_argument("--plan", required=True, help="Plan JSON produced by 'plan'")
    p.add_argument("--execute", action="store_true", help="Actually apply the operations")
    p.add_argument("--yes", action="store_true", help="Non-interactive yes for confirmations")
    p.add_argument("--output", default=str(DEFAULT_EXPORT_DIR / "organize_result.json"))

    p = sub.add_parser("delete", help="Delete one file or folder")
    p.add_argument("path")
    p.add_argument("--yes", action="store_true")
    p.add_argument("--output", default=str(DEFAULT_EXPORT_DIR / "delete_result.json"))

    return parser


COMMANDS = {
    "analyze": command_analyze,
    "duplicates": command_duplicates,
    "plan": command_plan,
    "organize": command_organize,
    "delete": command_delete,
}


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logger(Path(args.log_file))

    try:
        settings = resolve_settings(args)
        result = COMMANDS[args.command](settings, args)
        output_path = Path(args.output)
        export_json(output_path, result)

        print(json.dumps({
            "status": "ok",
            "command": args.command,
            "output": str(output_path.resolve()),
            "timestamp": now_utc_iso(),
        }, indent=2))
        return 0
    except Exception as exc:  # pylint: disable=broad-except
        print(json.dumps({
            "status": "error",
            "command": getattr(args, "command", None),
            "error": str(exc),
            "timestamp": now_utc_iso(),
        }, indent=2), file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
