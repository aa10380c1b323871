"""Administrative CLI utilities."""
from __future__ import annotations

import argparse
import json
from datetime import timedelta
from pathlib import Path
from typing import List, Optional

from willbatch.jobs.errors import JobError
from willbatch.jobs.models import utc_now
from willbatch.jobs.service import JobService, build_service
from willbatch.main import DEFAULT_SETTINGS_PATH, resolve_settings
from willbatch.observability.log import configure_logging
from willbatch.quality.error_report import default_report_path, export_errors, summarise_reasons
from willbatch.storage.layout import DataLayout


def cmd_status(args: argparse.Namespace, service: JobService) -> None:
    snapshot = service.monitor.snapshot()
    summary = {
        "active": snapshot.active_count,
        "by_status": service.monitor.stats(),
        "preview": [item.id for item in snapshot.preview],
        "overflow": snapshot.overflow,
    }
    print(json.dumps(summary, indent=2))


def cmd_errors(args: argparse.Namespace, service: JobService) -> None:
    jobs = service.list_jobs()
    if args.job_id:
        jobs = [job for job in jobs if job.id == args.job_id]
    cutoff = utc_now() - timedelta(days=args.last)
    jobs = [job for job in jobs if job.started_at >= cutoff]
    print(json.dumps(summarise_reasons(jobs), indent=2))


def cmd_export_errors(args: argparse.Namespace, service: JobService) -> None:
    job = service.get_job(args.job_id)
    target = Path(args.out) if args.out else default_report_path(DataLayout(service.settings.data_root).reports, job)
    export_errors(job, target)
    print(json.dumps({"job_id": job.id, "errors": len(job.errors), "path": str(target)}, indent=2))


def cmd_cleanup(args: argparse.Namespace, service: JobService) -> None:
    days = service.settings.retention_days if args.days is None else args.days
    removed = service.store.cleanup_old_jobs(days=days)
    print(json.dumps({"removed": removed, "retention_days": days}, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="willbatch.admin.cli", description="Administration commands")
    parser.add_argument("--config", type=Path, default=None)
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="Show job counts and the active preview")

    errors = sub.add_parser("inspect-errors", help="Summarise row failure reasons")
    errors.add_argument("--job-id")
    errors.add_argument("--last", type=int, default=7, help="Lookback window in days")

    export = sub.add_parser("export-errors", help="Write a job's failed rows to CSV")
    export.add_argument("job_id")
    export.add_argument("--out", help="Target CSV path")

    cleanup = sub.add_parser("cleanup", help="Drop finished jobs older than the retention window")
    cleanup.add_argument("--days", type=int)

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = resolve_settings(args.config or DEFAULT_SETTINGS_PATH)
    configure_logging(settings.logging_config)
    service = build_service(settings)
    try:
        if args.command == "status":
            cmd_status(args, service)
        elif args.command == "inspect-errors":
            cmd_errors(args, service)
        elif args.command == "export-errors":
            cmd_export_errors(args, service)
        elif args.command == "cleanup":
            cmd_cleanup(args, service)
    except JobError as exc:
        print(json.dumps({"error": str(exc), "kind": type(exc).__name__}, indent=2))
        raise SystemExit(1)


if __name__ == "__main__":
    main()
