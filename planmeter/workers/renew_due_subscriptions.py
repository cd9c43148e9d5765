"""Renewal job: create follow-up subscriptions for those about to end.

Picks active, not yet renewed subscriptions ending within --within-days and
renews each one in its own transaction. A subscription renewed concurrently
by another process is skipped.
"""
import argparse
import logging
from datetime import datetime
from typing import Dict, List, Optional

from planmeter.core.clock import normalize_now
from planmeter.core.config import settings
from planmeter.core.errors import AlreadyRenewedError, ConcurrencyConflictError
from planmeter.core.logging import configure_logging, log_event
from planmeter.features.subscriptions.service import due_for_renewal, renew

logger = logging.getLogger("planmeter.workers.renew_due_subscriptions")


def run_renewals(
    *,
    within_days: Optional[int] = None,
    dry_run: bool = False,
    now: Optional[datetime] = None,
) -> Dict:
    days = within_days if within_days is not None else settings.RENEWAL_WINDOW_DAYS
    now = normalize_now(now)
    due = due_for_renewal(days, now=now)

    report = {"within_days": days, "dry_run": dry_run, "due": len(due), "renewed": 0, "skipped": 0}
    if dry_run:
        logger.info("[renewals] dry run", extra=report)
        return report

    for subscription in due:
        try:
            renewal = renew(subscription.id, now=now)
        except (AlreadyRenewedError, ConcurrencyConflictError) as exc:
            report["skipped"] += 1
            log_event(
                "warning",
                "[renewals] skipped",
                subscription_id=subscription.id,
                error_code=exc.code,
                extra={"reason": exc.message},
            )
            continue
        report["renewed"] += 1
        log_event(
            "info",
            "[renewals] renewed",
            subscription_id=subscription.id,
            event_type="renewed",
            extra={"renewal_id": renewal.id},
        )

    logger.info("[renewals] complete", extra=report)
    return report


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Renew subscriptions that end soon.")
    parser.add_argument("--within-days", type=int, default=None, help="Renew subscriptions ending within this many days.")
    parser.add_argument("--dry-run", action="store_true", help="List due subscriptions without renewing.")
    args = parser.parse_args(argv)

    configure_logging(settings.ENV)
    report = run_renewals(within_days=args.within_days, dry_run=args.dry_run)
    print(report)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
