import argparse

from payment_api.database import SessionLocal
from payment_api.logging_config import get_logger
from payment_api.reconciliation import ReconciliationEngine

logger = get_logger(__name__)


def recover(limit: int = 100) -> int:
    """
    Credit players for COMPLETED transactions whose balance effect never landed.
    Returns the number of effects applied.
    """
    with SessionLocal() as db:
        return ReconciliationEngine(db).recover_unapplied(limit=limit)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Apply balance effects left behind by interrupted reconciliations.")
    parser.add_argument("--limit", type=int, default=100, help="maximum transactions to sweep")
    args = parser.parse_args(argv)
    applied = recover(limit=args.limit)
    logger.info("Recovery finished, applied=%s", applied)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
