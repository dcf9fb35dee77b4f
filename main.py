import argparse
import logging

from slotsync.config import load_settings
from slotsync.runs import (
    RunContext,
    reset_daily_quota,
    run_hourly_sync,
    run_integrity_check,
    run_nightly,
    run_submission,
)


def _setup_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="SlotSync: appointment slot ledger and calendar sync")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("nightly", help="Purge, reseed the ledger window, full calendar sync, refresh choices")

    submission = sub.add_parser("submission", help="Book the newest response of a category")
    submission.add_argument("category", help="Category id as listed in CATEGORIES")

    integrity = sub.add_parser("integrity", help="Detect and repair calendar/ledger drift")
    integrity.add_argument("--force", action="store_true", help="Ignore throttling and the unchanged-input shortcut")

    hourly = sub.add_parser("hourly", help="Throttled full-range calendar sync")
    hourly.add_argument("--force", action="store_true", help="Ignore throttling")

    sub.add_parser("reset-quota", help="Reset the daily calendar call counter (run at midnight)")
    return parser


def main() -> int:
    args = _build_parser().parse_args()

    _setup_logging()
    settings = load_settings()
    ctx = RunContext.build(settings)

    try:
        if args.command == "nightly":
            run_nightly(ctx)
        elif args.command == "submission":
            outcome = run_submission(ctx, args.category)
            logging.getLogger(__name__).info("Submission outcome: %s", outcome.status.value)
            # Non-zero exit lets the intake hook tell the requester the booking failed.
            return 0 if outcome.accepted else 2
        elif args.command == "integrity":
            run_integrity_check(ctx, force=args.force)
        elif args.command == "hourly":
            run_hourly_sync(ctx, force=args.force)
        elif args.command == "reset-quota":
            reset_daily_quota(ctx)
        return 0

    except Exception as e:
        # Crash alert (best-effort, rate-limited)
        try:
            ctx.alerter.report(f"{args.command} run", e)
        except Exception:
            logging.getLogger(__name__).warning("Failed to report crash", exc_info=True)
        raise


if __name__ == "__main__":
    raise SystemExit(main())
