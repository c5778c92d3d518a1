#!/usr/bin/env python3
"""
Webhook Recovery Script

Replays stored Cardcom notifications that never reached a subscription.
Run manually or as a cron job: python -m scripts.reprocess_webhooks

Usage:
    python -m scripts.reprocess_webhooks --pending                 # Retry failed events
    python -m scripts.reprocess_webhooks --email buyer@example.com
    python -m scripts.reprocess_webhooks --low-profile-id <LowProfileId>
    python -m scripts.reprocess_webhooks --drift                   # Report paid users without access
    python -m scripts.reprocess_webhooks --sweep                   # Expire lapsed subscriptions
    python -m scripts.reprocess_webhooks --charge-due              # Charge saved cards that are due
"""

import asyncio
import argparse
import logging

# Add parent directory to path for imports
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.config.settings import settings
from app.infrastructure.db.database import close_db, get_db_manager
from app.infrastructure.payments.cardcom_service import CardcomService
from app.infrastructure.services.reconciler import Reconciler
from app.infrastructure.services.recovery_service import RecoveryService
from app.infrastructure.services.renewal_service import RenewalService
from app.infrastructure.services.subscription_service import SubscriptionService
from app.infrastructure.services.webhook_ingestor import WebhookIngestor

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Replay stored Cardcom webhooks")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--email", help="Reprocess unprocessed events for this card owner e-mail")
    target.add_argument("--low-profile-id", help="Reprocess every event for this LowProfileId")
    target.add_argument("--pending", action="store_true", help="Retry all retryable events")
    target.add_argument("--drift", action="store_true", help="List paid users without access")
    target.add_argument("--sweep", action="store_true", help="Expire lapsed subscriptions")
    target.add_argument("--charge-due", action="store_true", help="Charge subscriptions whose renewal is due")
    parser.add_argument("--user-id", help="Attribute reprocessed events to this user")
    parser.add_argument(
        "--limit",
        type=int,
        default=50,
        help="Maximum number of events or subscriptions to process (default: 50)"
    )
    return parser


async def run(args: argparse.Namespace) -> int:
    factory = get_db_manager().session_factory
    ingestor = WebhookIngestor(factory, Reconciler(factory))
    recovery = RecoveryService(factory, ingestor)

    if args.pending:
        report = await recovery.process_pending(args.limit)
        print("\n=== Pending Events ===")
        print(f"Attempted: {report.attempted}")
        print(f"Processed: {report.processed}")
        print(f"Still pending: {report.still_pending}")
        return 0 if report.still_pending == 0 else 1

    if args.drift:
        drift = await recovery.detect_drift()
        print(f"\n=== Drift: {len(drift)} users ===")
        for item in drift:
            print(
                f"{item.user_id}  plan={item.plan_id}  amount={item.amount}  "
                f"paid_at={item.paid_at.isoformat()}  status={item.subscription_status}"
            )
        return 0 if not drift else 1

    if args.sweep:
        report = await SubscriptionService(factory).sweep_expired()
        print(f"Expired {report.expired_count} subscriptions")
        return 0

    if args.charge_due:
        report = await RenewalService(factory, ingestor, CardcomService()).charge_due(args.limit)
        print("\n=== Renewal Charges ===")
        print(f"Due: {report.due}  charged: {report.charged}  declined: {report.failed}  skipped: {report.skipped}")
        for result in report.results:
            print(f"{result.user_id}: {result.outcome} {result.message or ''}")
        return 0 if report.unresolved == 0 else 1

    report = await recovery.reprocess(
        email=args.email,
        low_profile_id=args.low_profile_id,
        user_id=args.user_id,
    )
    print(f"\n=== Reprocessed for user {report.user_id} ===")
    for result in report.results:
        duplicate = " (duplicate)" if result.duplicate else ""
        print(f"{result.event_id}: {result.outcome}{duplicate} {result.message or ''}")
    token = report.token_status
    print(f"Token on file: {token.has_token}  valid={token.is_valid}  last4={token.last4}")
    return 0


async def main():
    args = build_parser().parse_args()
    try:
        code = await run(args)
    finally:
        await close_db()
    sys.exit(code)


if __name__ == "__main__":
    asyncio.run(main())
