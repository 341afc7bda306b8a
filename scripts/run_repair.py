"""Run a repair or backfill job against the activity store and print its summary."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Sequence

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import db
import repair
from errors import StoreUnavailableError
from schemas import RepairSummary


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("job", choices=repair.JOB_NAMES, help="Repair job to run")
    parser.add_argument("--email", type=str, default=None, help="Student email (archive/delete jobs)")
    parser.add_argument(
        "--source",
        type=str,
        default=None,
        choices=("webhook", "csv_import", "rest_backfill", "manual_test"),
        help="Restrict to events or captures from one source",
    )
    parser.add_argument("--reason", type=str, default="", help="Archive reason recorded on each event")
    parser.add_argument(
        "--execute",
        action="store_true",
        help="Apply archive/delete/collapse changes (default: preview only)",
    )
    parser.add_argument("--csv", type=str, default=None, help="CSV export used by repair_scores_from_csv")
    parser.add_argument("--output", type=str, default=None, help="Optional path to write the JSON summary")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log every repaired record")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING)

    csv_text = None
    if args.csv:
        csv_path = Path(args.csv)
        if not csv_path.exists():
            print(f"CSV file not found: {csv_path}", file=sys.stderr)
            return 2
        csv_text = csv_path.read_text(encoding="utf-8-sig")

    db.init()
    try:
        outcome = repair.run_job(
            args.job,
            email=args.email,
            source=args.source,
            reason=args.reason,
            execute=args.execute,
            csv_text=csv_text,
        )
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return 2
    except StoreUnavailableError as exc:
        print(f"Aborted: {exc}", file=sys.stderr)
        return 2

    payload = json.dumps(outcome.model_dump(), indent=2, ensure_ascii=False)
    if args.output:
        Path(args.output).write_text(payload + "\n", encoding="utf-8")
    print(payload)

    if isinstance(outcome, RepairSummary) and outcome.errors:
        print(f"{outcome.errors} record(s) failed; see error_details", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
