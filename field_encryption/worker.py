"""
Delivery worker CLI.

Usage:
    field-encryption-worker            # poll forever
    field-encryption-worker --once     # process one batch and exit

Or run directly:
    python -m field_encryption.worker

PostgreSQL setup:
    1. Run schema: psql -U postgres -f schema.sql
    2. Set DATABASE_URL, FIELD_ENCRYPTION_KEY, SURVEY_BASE_URL and SMTP_HOST
       in the environment or a .env file
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

import asyncpg

from .codec import FieldCodec
from .config import Settings, apply_overrides, load_settings
from .delivery import DeliveryQueueProcessor
from .errors import ConfigurationError
from .keys import EnvironmentKeyProvider
from .logging_config import configure_logging
from .mailer import SmtpMailer
from .postgres import PostgresQueueStore, PostgresTemplateStore

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="field-encryption-worker",
        description="Deliver queued messages addressed to encrypted placeholders.",
    )
    parser.add_argument("--once", action="store_true", help="process one batch and exit")
    parser.add_argument("--interval", type=float, help="seconds between runs")
    parser.add_argument("--batch-size", type=int, help="entries claimed per run")
    return parser.parse_args(argv)


async def run_worker(settings: Settings, once: bool = False) -> None:
    """Connect to PostgreSQL and run the delivery processor."""
    pool = await asyncpg.create_pool(settings.database_url)
    if pool is None:
        raise ConfigurationError("Failed to create connection pool")

    try:
        processor = DeliveryQueueProcessor(
            codec=FieldCodec(EnvironmentKeyProvider(settings.key_env_var)),
            queue=PostgresQueueStore(pool),
            templates=PostgresTemplateStore(pool),
            mailer=SmtpMailer(settings.smtp),
            survey_base_url=settings.survey_base_url,
            batch_size=settings.batch_size,
            claim_lease=settings.claim_lease,
        )

        if once:
            result = await processor.run_once()
            logger.info("Single run finished: %s", result)
            return

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, stop.set)
            except NotImplementedError:
                pass  # Windows event loops

        logger.info(
            "Delivery worker started (interval %ss, batch size %d)",
            settings.poll_interval,
            settings.batch_size,
        )
        await processor.run_forever(settings.poll_interval, stop)
        logger.info("Delivery worker stopped")
    finally:
        await pool.close()


def main(argv: Optional[List[str]] = None) -> None:
    """CLI entry point for field-encryption-worker command."""
    args = parse_args(argv)
    try:
        settings = apply_overrides(
            load_settings(), poll_interval=args.interval, batch_size=args.batch_size
        )
    except ConfigurationError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)

    configure_logging(settings.log_level)
    asyncio.run(run_worker(settings, once=args.once))


if __name__ == "__main__":
    main()
