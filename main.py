"""Command line entry point for the CRM deduplication engine.

Runs a batch detection over a JSON or YAML file of records and prints the
job summary, or prints a health report.
"""
from dotenv import load_dotenv
import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

# Load environment variables first, before the config is built
load_dotenv()

import yaml

from dedup_engine.config import get_config
from dedup_engine.engine import DuplicateDetectionEngine
from dedup_engine.errors import DedupEngineError
from dedup_engine.models import BatchOptions
from dedup_engine.sources import InMemoryRecordSource
from dedup_engine.utils.logger import log_error, log_info


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Detect duplicate CRM records.")
    sub = parser.add_subparsers(dest="command", required=True)

    batch = sub.add_parser("batch", help="Run batch duplicate detection over a records file.")
    batch.add_argument("--records", required=True, type=Path, help="JSON or YAML file with a list of records.")
    batch.add_argument("--record-type", default="contact", help="Record type (default: contact).")
    batch.add_argument("--source-system", default="default", help="Source system of the records.")
    batch.add_argument("--rules", type=Path, help="YAML file with matching rules and strategies.")
    batch.add_argument("--batch-size", type=int, help="Records per chunk.")
    batch.add_argument("--workers", type=int, help="Concurrent detections per chunk.")
    batch.add_argument("--auto-merge-threshold", type=float, help="Merge pairs scoring at or above this.")
    batch.add_argument("--max-runtime", type=float, help="Fail the job after this many seconds.")

    health = sub.add_parser("health", help="Print the engine health report.")
    health.add_argument("--records", type=Path, help="Optional records file to run detection on first.")
    health.add_argument("--record-type", default="contact")
    health.add_argument("--source-system", default="default")
    return parser


def load_records(path: Path) -> List[Dict[str, Any]]:
    """Read records from JSON or YAML; accepts a list or ``{"records": [...]}``."""
    with open(path, "r", encoding="utf-8") as fh:
        if path.suffix.lower() in (".yaml", ".yml"):
            raw = yaml.safe_load(fh)
        else:
            raw = json.load(fh)
    if isinstance(raw, dict):
        raw = raw.get("records", [])
    if not isinstance(raw, list) or not all(isinstance(r, dict) for r in raw):
        raise ValueError(f"{path} must contain a list of record objects")
    return raw


async def run_batch(args: argparse.Namespace) -> Dict[str, Any]:
    source = InMemoryRecordSource()
    records = load_records(args.records)
    await source.add_records(args.record_type, records, args.source_system)

    async with DuplicateDetectionEngine(record_source=source) as engine:
        if args.rules:
            await engine.load_rules_file(args.rules)
        options = BatchOptions(
            batch_size=args.batch_size,
            max_concurrency=args.workers,
            skip_recently_processed=False,
            auto_merge_threshold=args.auto_merge_threshold,
            max_runtime_seconds=args.max_runtime,
        )
        job = await engine.start_batch_detection(args.record_type, args.source_system, options)
        job = await engine.wait_for_batch_job(job.id)
        summary = {
            "job_id": job.id,
            "status": job.status.value,
            "error": job.error,
            **(job.results.summary if job.results else {}),
            "errors_detail": [
                {"record_id": e.record_id, "error": e.error, "severity": e.severity}
                for e in (job.results.errors if job.results else [])
            ],
        }
    return summary


async def run_health(args: argparse.Namespace) -> Dict[str, Any]:
    source = InMemoryRecordSource()
    async with DuplicateDetectionEngine(record_source=source) as engine:
        if args.records:
            records = load_records(args.records)
            await source.add_records(args.record_type, records, args.source_system)
            for record in records:
                await engine.detect_duplicates(record, args.record_type, args.source_system)
        await engine.refresh_metrics()
        report = await engine.health_check()
    return report.to_dict()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    config = get_config()
    config.log_configuration()
    issues = config.validate_configuration()
    for issue in issues:
        print(f"⚠️  {issue}")

    try:
        if args.command == "batch":
            result = asyncio.run(run_batch(args))
        else:
            result = asyncio.run(run_health(args))
    except (OSError, ValueError, yaml.YAMLError, DedupEngineError) as exc:
        log_error("Command failed", command=args.command, error=str(exc))
        print(f"❌ {exc}")
        return 1

    print(json.dumps(result, indent=2, default=str))
    log_info("Command finished", command=args.command, status=result.get("status"))
    if args.command == "batch":
        return 0 if result["status"] == "completed" else 1
    return 0 if result["status"] != "unhealthy" else 2


if __name__ == "__main__":
    sys.exit(main())
