from __future__ import annotations

import argparse
import json
import os
import sys
from datetime import date
from typing import Any, Dict, List

SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
PROJECT_ROOT = os.path.abspath(os.path.join(SCRIPT_DIR, ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)


def load_env_file(env_path: str) -> None:
    if not os.path.exists(env_path):
        return
    with open(env_path, "r", encoding="utf-8") as env_file:
        for line in env_file:
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, value = line.split("=", 1)
            os.environ.setdefault(key, value)


def parse_args() -> argparse.Namespace:
    today = date.today()
    previous_month_year = today.year if today.month > 1 else today.year - 1
    previous_month = today.month - 1 if today.month > 1 else 12
    parser = argparse.ArgumentParser(
        description="Recalculate monthly guide metrics for one branch and store them in guide_performance_metrics."
    )
    parser.add_argument("--branch-id", required=True, help="Branch whose guides are refreshed.")
    parser.add_argument("--year", type=int, default=previous_month_year, help="Period year (default: last month).")
    parser.add_argument("--month", type=int, default=previous_month, help="Period month (default: last month).")
    parser.add_argument("--limit", type=int, default=500, help="Maximum guides to refresh (default: 500).")
    parser.add_argument(
        "--apply",
        action="store_true",
        help="Actually upsert rows. Without this flag, script runs in dry-run mode.",
    )
    parser.add_argument(
        "--env-file",
        default=os.path.join(SCRIPT_DIR, "..", ".env"),
        help="Path to .env file.",
    )
    return parser.parse_args()


def run_refresh(branch_id: str, year: int, month: int, limit: int, apply: bool) -> Dict[str, Any]:
    from src.api.dependencies import (
        get_guide_metrics_service,
        get_guides_repository,
        get_performance_snapshots_repository,
    )
    from src.core.branch_scope import BranchScope
    from src.schemas.guide_metrics import BASE_DIMENSIONS, MetricsCalculationOptions, MetricsPeriod
    from src.services.guide_metrics_service import snapshot_to_record_row
    from src.shared.time import month_window

    period_start, period_end = month_window(year, month)
    period = MetricsPeriod(start=period_start, end=period_end, type="monthly")
    # Trends stay on so the service never answers from the table being refreshed.
    options = MetricsCalculationOptions(
        include=list(BASE_DIMENSIONS), calculate_trends=True, compare_with_previous=False
    )
    service = get_guide_metrics_service()
    guide_ids = get_guides_repository().list_branch_guide_ids(BranchScope(branch_id=branch_id), limit=limit)

    rows: List[Dict[str, Any]] = []
    skipped: List[str] = []
    for guide_id in guide_ids:
        metrics = service.calculate_unified_metrics(guide_id, period, options)
        if metrics.source == "fallback":
            skipped.append(guide_id)
            continue
        rows.append(snapshot_to_record_row(guide_id, metrics))

    stored = get_performance_snapshots_repository().upsert_snapshots(rows) if apply else []
    return {
        "mode": "apply" if apply else "dry-run",
        "branchId": branch_id,
        "periodStart": period.start.date().isoformat(),
        "periodEnd": period.last_day.isoformat(),
        "guidesSeen": len(guide_ids),
        "rowsPrepared": len(rows),
        "rowsStored": len(stored),
        "skippedDegraded": skipped,
    }


def main() -> None:
    args = parse_args()
    load_env_file(os.path.abspath(args.env_file))
    if not 1 <= args.month <= 12:
        raise SystemExit("--month must be between 1 and 12")
    result = run_refresh(args.branch_id, args.year, args.month, args.limit, args.apply)
    print(json.dumps(result, indent=2, sort_keys=True))


if __name__ == "__main__":
    main()
