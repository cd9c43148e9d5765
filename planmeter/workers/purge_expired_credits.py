"""Purge job for expired extra credits.

Deletes credit rows whose expires_at is strictly in the past, in batches.
Use --dry-run to only count candidates.
"""
import argparse
import logging
from datetime import datetime
from typing import Dict, List, Optional

from planmeter.core.clock import normalize_now
from planmeter.core.config import settings
from planmeter.core.logging import configure_logging
from planmeter.features.credits.service import purge_expired_credits

logger = logging.getLogger("planmeter.workers.purge_expired_credits")


def run_purge(
    *,
    batch_size: Optional[int] = None,
    dry_run: Optional[bool] = None,
    now: Optional[datetime] = None,
) -> Dict:
    size = batch_size if batch_size is not None else settings.CREDIT_PURGE_BATCH_SIZE
    dry = dry_run if dry_run is not None else settings.CREDIT_PURGE_DRY_RUN
    now = normalize_now(now)

    count = purge_expired_credits(batch_size=size, dry_run=dry, now=now)

    report = {"batch_size": size, "dry_run": dry, "ran_at": now.isoformat()}
    if dry:
        report["candidates"] = count
    else:
        report["deleted"] = count
    logger.info("[purge] expired credits", extra=report)
    return report


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Delete expired subscription feature credits.")
    parser.add_argument("--dry-run", action="store_true", default=None, help="Count expired credits without deleting.")
    parser.add_argument("--batch-size", type=int, default=None, help="Rows deleted per transaction.")
    args = parser.parse_args(argv)

    configure_logging(settings.ENV)
    report = run_purge(batch_size=args.batch_size, dry_run=args.dry_run)
    print(report)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
