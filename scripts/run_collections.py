#!/usr/bin/env python3
"""Run the delinquency collections cycle once, outside the web process.

Usage:
    python scripts/run_collections.py            # classify, persist, send notices
    python scripts/run_collections.py --dry-run  # report units needing action only
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from condo_collections.config import Base, SessionLocal, engine, settings  # noqa: E402
from condo_collections.core.logging import configure_logging  # noqa: E402
from condo_collections.services.ledger import SqlUnitLedgerStore  # noqa: E402
from condo_collections.services.pipeline import check_units, summary_payload  # noqa: E402
from condo_collections.services.scheduler import CollectionScheduler  # noqa: E402


def _print_check() -> None:
    with SessionLocal() as session:
        assessments = check_units(SqlUnitLedgerStore(session))
    needing_action = [item for item in assessments if item.needs_action]
    if not needing_action:
        print("All units current. No action needed.")
        return
    for item in needing_action:
        print(
            f"Unit {item.snapshot.label:<8} {item.snapshot.owner_name:<28} "
            f"${item.snapshot.total_owed:>10,.2f} {item.days_delinquent:>4}d  {item.recommended_action}"
        )
    print(f"{len(needing_action)} of {len(assessments)} units need action.")


def main() -> int:
    parser = argparse.ArgumentParser(description="Run the collections cycle once.")
    parser.add_argument("--dry-run", action="store_true", help="Only report units needing action.")
    args = parser.parse_args()

    configure_logging(settings.log_level, settings.log_format)
    Base.metadata.create_all(bind=engine)

    if args.dry_run:
        _print_check()
        return 0

    summary = CollectionScheduler().trigger_manual()
    payload = summary_payload(summary)
    print(f"Delinquent units:        {payload['delinquent_unit_count']}")
    print(f"Units needing action:    {payload['units_needing_action']}")
    print(f"Status changes:          {len(summary.events)}")
    print(f"Owner notices sent:      {payload['owner_notices_sent']}")
    print(f"Attorney referrals sent: {payload['attorney_referrals_sent']}")
    print(f"Board alerts sent:       {payload['board_alerts_sent']}")
    for failure in payload["failures"]:
        print(f"FAILED: {failure}")
    if summary.fatal_error:
        print(f"Cycle aborted: {summary.fatal_error}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
