"""Allow running as: python -m chainpay

Usage:
  python -m chainpay                   # Poll until SIGINT/SIGTERM
  python -m chainpay --once            # Single tick, then exit
  python -m chainpay --create-schema   # Create tables from metadata first (dev only)
"""

import argparse
import asyncio

from chainpay.utils.logger import setup_logging


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="On-chain payments poller")
    parser.add_argument("--log-level", default=None, help="Overrides LOG_LEVEL")
    parser.add_argument(
        "--create-schema",
        action="store_true",
        help="Create missing tables from model metadata before starting",
    )
    parser.add_argument("--once", action="store_true", help="Run a single tick and exit")
    args = parser.parse_args()

    from chainpay.config.settings import get_config

    config = get_config()
    setup_logging(log_level=args.log_level or config.log_level)

    from chainpay.main import PaymentsService

    service = PaymentsService(config=config)
    if args.once:
        asyncio.run(service.run_once(create_tables=args.create_schema))
    else:
        asyncio.run(service.start(create_tables=args.create_schema))


if __name__ == "__main__":
    main()
