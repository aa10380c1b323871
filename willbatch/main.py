"""Command-line entrypoints for the will registry batch engine."""
from __future__ import annotations

import argparse
import asyncio
import json
import os
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import tomllib
from dotenv import load_dotenv

from willbatch.ingest.csv_source import (
    FIELDS_BY_TYPE,
    ColumnMapping,
    apply_mapping,
    detect_column_mapping,
    parse_csv,
    unmapped_required,
)
from willbatch.jobs.errors import JobError
from willbatch.jobs.models import JobStatus, JobType
from willbatch.jobs.monitor import JobMonitor, MonitorSnapshot
from willbatch.jobs.service import JobService, build_service
from willbatch.jobs.settings import JobSettings
from willbatch.jobs.submission import JobSubmission
from willbatch.observability.log import configure_logging
from willbatch.storage.layout import DataLayout

DEFAULT_SETTINGS_PATH = Path("config/settings.toml")


def load_settings(path: Path) -> Dict[str, object]:
    """Read the TOML configuration file; a missing file means defaults."""
    if not path.exists():
        return {}
    with path.open("rb") as handle:
        return tomllib.load(handle)


def resolve_settings(path: Path) -> JobSettings:
    settings = JobSettings.from_settings(load_settings(path))
    data_root = os.environ.get("WILLBATCH_DATA_ROOT")
    if data_root:
        settings = settings.model_copy(update={"data_root": Path(data_root)})
    return settings


def build_arg_parser() -> argparse.ArgumentParser:
    """Create the CLI argument parser."""
    parser = argparse.ArgumentParser(prog="willbatch", description="Bulk will upload and search batch jobs")
    parser.add_argument("--config", type=Path, default=None, help="Path to settings.toml")
    sub = parser.add_subparsers(dest="command", required=True)

    submit = sub.add_parser("submit", help="Queue a job from a CSV file")
    submit.add_argument("csv", type=Path, help="Uploaded CSV file")
    submit.add_argument("--type", default=JobType.WILL_UPLOAD.value, choices=[item.value for item in JobType])
    submit.add_argument("--firm-id", required=True)
    submit.add_argument("--user-id", required=True)
    submit.add_argument("--firm-name")
    submit.add_argument("--user-name")
    submit.add_argument("--map", action="append", default=[], metavar="FIELD=COLUMN[+COLUMN]",
                        help="Override the detected column for a field; '+' merges columns")
    submit.add_argument("--fixed", action="append", default=[], metavar="FIELD=VALUE",
                        help="Use a fixed value for a field on every row")
    submit.add_argument("--batch-size", type=int)
    submit.add_argument("--run", action="store_true", help="Process the job right away")

    jobs = sub.add_parser("jobs", help="List jobs")
    jobs.add_argument("--status", choices=[item.value for item in JobStatus])

    show = sub.add_parser("show", help="Show one job with its errors and activity log")
    show.add_argument("job_id")

    cancel = sub.add_parser("cancel", help="Cancel a queued or processing job")
    cancel.add_argument("job_id")

    retry = sub.add_parser("retry", help="Queue the unsuccessful rows of a failed or cancelled job")
    retry.add_argument("job_id")
    retry.add_argument("--batch-size", type=int)
    retry.add_argument("--run", action="store_true", help="Process the new job right away")

    run = sub.add_parser("run", help="Process queued jobs")
    run.add_argument("job_ids", nargs="*", help="Jobs to run; all queued jobs when omitted")
    run.add_argument("--batch-size", type=int)

    monitor = sub.add_parser("monitor", help="Poll active jobs")
    monitor.add_argument("--ticks", type=int, help="Number of polls before exiting")
    monitor.add_argument("--interval", type=float, help="Seconds between polls")

    return parser


def _split_pairs(values: List[str], option: str) -> Dict[str, str]:
    pairs: Dict[str, str] = {}
    for item in values:
        field, sep, value = item.partition("=")
        if not sep or not field.strip():
            raise SystemExit(f"{option} expects FIELD=VALUE, got {item!r}")
        pairs[field.strip()] = value.strip()
    return pairs


def build_mappings(columns, job_type: JobType, overrides: List[str], fixed: List[str]) -> List[ColumnMapping]:
    """Detected mappings with any ``--map``/``--fixed`` overrides applied."""
    mappings = {mapping.field: mapping for mapping in detect_column_mapping(columns, FIELDS_BY_TYPE[job_type])}
    for field, column in _split_pairs(overrides, "--map").items():
        parts = [part.strip() for part in column.split("+") if part.strip()]
        current = mappings.get(field) or ColumnMapping(field=field)
        mappings[field] = current.model_copy(update={"csv_column": parts if len(parts) > 1 else (parts[0] if parts else None)})
    for field, value in _split_pairs(fixed, "--fixed").items():
        current = mappings.get(field) or ColumnMapping(field=field)
        mappings[field] = current.model_copy(update={"fixed_value": value})
    return list(mappings.values())


def _print(payload: object) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _job_detail(job) -> Dict[str, object]:
    payload = job.to_dict()
    payload.pop("data", None)
    payload["percent_complete"] = job.percent_complete
    return payload


def cmd_submit(args: argparse.Namespace, service: JobService) -> None:
    job_type = JobType(args.type)
    parsed = parse_csv(args.csv)
    mappings = build_mappings(parsed.columns, job_type, args.map, args.fixed)
    missing = unmapped_required(mappings)
    if missing:
        _print({"error": "required fields are not mapped", "fields": missing})
        raise SystemExit(1)
    submission = JobSubmission(
        type=job_type,
        firm_id=args.firm_id,
        firm_name=args.firm_name,
        user_id=args.user_id,
        user_name=args.user_name,
        file_name=args.csv.name,
        records=apply_mapping(parsed.rows, mappings),
    )
    job = service.submit(submission, batch_size=args.batch_size)
    if args.run:
        job = asyncio.run(service.run(job.id))
    _print(job.summary())


def cmd_jobs(args: argparse.Namespace, service: JobService) -> None:
    _print([job.summary() for job in service.list_jobs(args.status)])


def cmd_run(args: argparse.Namespace, service: JobService) -> None:
    async def _run() -> List[Dict[str, object]]:
        if not args.job_ids:
            return [job.summary() for job in await service.run_pending()]
        tasks = [service.start(job_id, batch_size=args.batch_size) for job_id in args.job_ids]
        # One bad id must not tear down the runs of the others.
        outcomes = await asyncio.gather(*tasks, return_exceptions=True)
        results: List[Dict[str, object]] = []
        for job_id, outcome in zip(args.job_ids, outcomes):
            if isinstance(outcome, JobError):
                results.append({"id": job_id, "error": str(outcome), "kind": type(outcome).__name__})
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                results.append(outcome.summary())
        return results

    results = asyncio.run(_run())
    _print(results)
    if any("error" in item for item in results):
        raise SystemExit(1)


def cmd_monitor(args: argparse.Namespace, service: JobService) -> None:
    monitor = service.monitor
    if args.interval is not None:
        monitor = JobMonitor(service.store, interval=args.interval, preview_limit=service.settings.preview_limit)

    def _emit(snapshot: MonitorSnapshot) -> None:
        print(json.dumps({"at": datetime.now().isoformat(timespec="seconds"), **snapshot.to_dict()}), flush=True)

    asyncio.run(monitor.watch(_emit, ticks=args.ticks))


def main(argv: Optional[List[str]] = None) -> None:
    """Entry point for the CLI."""
    load_dotenv()
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    settings = resolve_settings(args.config or DEFAULT_SETTINGS_PATH)
    configure_logging(settings.logging_config)
    service = build_service(settings)

    try:
        if args.command == "submit":
            cmd_submit(args, service)
        elif args.command == "jobs":
            cmd_jobs(args, service)
        elif args.command == "show":
            _print(_job_detail(service.get_job(args.job_id)))
        elif args.command == "cancel":
            _print(service.cancel(args.job_id).summary())
        elif args.command == "retry":
            job = service.retry(args.job_id, batch_size=args.batch_size)
            if args.run:
                job = asyncio.run(service.run(job.id))
            _print(job.summary())
        elif args.command == "run":
            cmd_run(args, service)
        elif args.command == "monitor":
            cmd_monitor(args, service)
    except JobError as exc:
        _print({"error": str(exc), "kind": type(exc).__name__})
        raise SystemExit(1)
    finally:
        service.metrics.export(
            path=DataLayout(settings.data_root).metrics / f"cli_{args.command}.json",
            run_id=args.command,
        )


if __name__ == "__main__":
    main()
