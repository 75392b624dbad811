"""Periodic subscription/usage reconciliation.

Usage: python -m listos.workers.reconcile_subscriptions [--fix] [--limit N]
"""
import argparse
import json
import logging
from datetime import datetime, timezone
from typing import Optional, Sequence

from listos.core.cache import build_cache
from listos.core.config import settings
from listos.core.database import init_engine
from listos.core.logging import configure_logging
from listos.core.retry import RetryOptions, RetryPolicy
from listos.features.billing.reconcile_job import run_reconcile_job
from listos.features.persistence.sql_gateway import SqlPersistenceGateway

logger = logging.getLogger("listos.workers.reconcile")


def reconcile_subscriptions(*, fix: bool = False, limit: int = 100, now: Optional[datetime] = None) -> dict:
    engine = init_engine()
    result = run_reconcile_job(
        SqlPersistenceGateway(engine),
        build_cache(settings),
        now or datetime.now(timezone.utc),
        fix=fix,
        limit=limit,
        retry=RetryPolicy(RetryOptions.from_settings(settings)),
    )
    logger.info(
        "[reconcile] run complete",
        extra={"outcome": f"{result['issues_found']} issues/{result['corrections_applied']} fixed"},
    )
    return result


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Reconcile subscriptions and usage counters")
    parser.add_argument("--fix", action="store_true", help="apply corrections instead of only reporting")
    parser.add_argument("--limit", type=int, default=100)
    args = parser.parse_args(argv)

    configure_logging(settings.ENV)
    result = reconcile_subscriptions(fix=args.fix, limit=args.limit)
    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
