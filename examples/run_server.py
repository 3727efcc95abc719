"""
Outbox server script.

Usage:
    python examples/run_server.py [--host HOST] [--port PORT] [--store PATH]

Options:
    --host HOST    Bind address (default: 127.0.0.1)
    --port PORT    Port to listen on (default: 8080)
    --store PATH   JSON record path (default: CHATOUTBOX_STORE_PATH)

When CHATOUTBOX_DATABASE_URL is set, items are kept in PostgreSQL instead.
"""

import argparse
import asyncio
import logging

from chatoutbox.backends.postgres import PostgresOutboxStore
from chatoutbox.config import get_settings
from chatoutbox.server import Server
from chatoutbox.store import JsonFileOutboxStore

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)


async def main() -> None:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="chatoutbox server")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8080)
    parser.add_argument("--store", default=settings.store_path)
    args = parser.parse_args()

    pg_store = None
    if settings.database_url:
        pg_store = PostgresOutboxStore(
            settings.database_url,
            lease_ttl=settings.lease_ttl,
            retry_policy=settings.retry_policy(),
        )
        await pg_store.create_table_if_not_exists()
        store = pg_store
    else:
        store = JsonFileOutboxStore(
            args.store,
            lease_ttl=settings.lease_ttl,
            retry_policy=settings.retry_policy(),
        )

    server = Server(
        store, host=args.host, port=args.port, keep_delivered=settings.keep_delivered
    )
    await server.start()
    logger.info(
        "chatoutbox server listening on %s:%d (store=%s)",
        args.host,
        server.port,
        "postgres" if pg_store else args.store,
    )

    try:
        await server.run_forever()
    except (KeyboardInterrupt, asyncio.CancelledError):
        pass
    finally:
        await server.stop()
        if pg_store is not None:
            await pg_store.close()
        logger.info("server stopped")


if __name__ == "__main__":
    asyncio.run(main())
