#!/usr/bin/env python3
"""
Copy one day's schedule onto another date in the schedule store.

Reads the store URL and key from REHAB_STORE_URL / REHAB_STORE_KEY.

Usage:
  python scripts/copy_schedule.py --from 2026-03-02 --to 2026-03-03
  python scripts/copy_schedule.py --from 2026-03-02 --to 2026-03-03 --mode full --no-buffer
"""

import argparse
import logging
import os
import sys
from pathlib import Path

# Add project root to path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from rehab_scheduler.errors import GatewayError, ScheduleNotFound
from rehab_scheduler.gateway import ScheduleGateway
from rehab_scheduler.schedule_copy import COPY_MODES, copy_schedule


def main():
    parser = argparse.ArgumentParser(description="Copy a schedule to another date")
    parser.add_argument("--from", dest="from_date", required=True, help="Source date YYYY-MM-DD")
    parser.add_argument("--to", dest="to_date", required=True, help="Target date YYYY-MM-DD")
    parser.add_argument("--mode", choices=COPY_MODES, default="hybrid")
    parser.add_argument("--no-buffer", action="store_true", help="Leave buffer staff out of the copy")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    base_url = os.environ.get("REHAB_STORE_URL")
    api_key = os.environ.get("REHAB_STORE_KEY")
    if not base_url or not api_key:
        print("Error: set REHAB_STORE_URL and REHAB_STORE_KEY")
        sys.exit(1)

    gateway = ScheduleGateway(base_url, api_key)
    try:
        report = copy_schedule(
            gateway, args.from_date, args.to_date,
            mode=args.mode, include_buffer_staff=not args.no_buffer,
        )
    except ScheduleNotFound as e:
        print(f"✗ {e.reason}: {e}")
        sys.exit(1)
    except GatewayError as e:
        print(f"✗ Copy failed: {e}")
        sys.exit(1)

    print(f"✓ Copied {report.from_date} → {report.to_date} ({report.mode}) up to {report.copied_up_to_step}")
    print(f"  Rows: {report.row_counts}")
    if report.buffer_staff_ids:
        print(f"  Buffer staff: {', '.join(report.buffer_staff_ids)}")
    if report.rebase_warning:
        print(f"  ⚠ {report.rebase_warning}")


if __name__ == "__main__":
    main()
