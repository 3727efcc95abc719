"""
Delivery worker script.

Usage:
    python examples/run_worker.py [--backend URL] [--principal ID ...]

Reads CHATOUTBOX_TELEGRAM_BOT_TOKEN, CHATOUTBOX_BACKEND_URL and
CHATOUTBOX_PRINCIPALS (comma-separated) from the environment or .env.
"""

import argparse
import asyncio
import logging

from chatoutbox.client import OutboxClient
from chatoutbox.config import get_settings
from chatoutbox.indicator import ThinkingIndicator
from chatoutbox.progress import ProgressCache
from chatoutbox.telegram import TelegramTransport
from chatoutbox.worker import DeliveryWorker

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)


async def main() -> None:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="chatoutbox delivery worker")
    parser.add_argument("--backend", default=settings.backend_url)
    parser.add_argument("--principal", action="append", dest="principals")
    args = parser.parse_args()

    principals = args.principals or settings.principals
    if not principals:
        parser.error("no principals: pass --principal or set CHATOUTBOX_PRINCIPALS")
    if not settings.telegram_bot_token:
        parser.error("CHATOUTBOX_TELEGRAM_BOT_TOKEN is not set")

    transport = TelegramTransport(
        settings.telegram_bot_token, timeout=settings.transport_timeout_seconds
    )
    client = OutboxClient(args.backend)
    worker = DeliveryWorker(
        client,
        transport,
        principals,
        indicator=ThinkingIndicator(transport),
        poll_interval=settings.poll_interval_seconds,
        pull_limit=settings.pull_limit,
        transport_timeout=settings.transport_timeout_seconds,
        progress_cache=ProgressCache(settings.progress_ttl_seconds),
    )

    await worker.start()
    try:
        await worker.run_forever()
    except (KeyboardInterrupt, asyncio.CancelledError):
        pass
    finally:
        await worker.stop()
        await client.close()
        await transport.close()
        logger.info("worker stopped")


if __name__ == "__main__":
    asyncio.run(main())
