# Run the sync core headless: watch every table, drain the outbox, log health
from __future__ import annotations
import argparse
import asyncio
import logging
import sys
from pathlib import Path

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from reva_core.config import load_settings
from reva_core.errors import SyncCoreError, handle_error
from reva_core.logging import get_logger, setup_logging
from reva_core.offline import create_sync_coordinator
from reva_core.offline.sync_coordinator import STALE_ENTITIES_KEY

logger = get_logger("reva_core.agent")


async def run(args: argparse.Namespace) -> int:
    settings = load_settings(args.config)
    coordinator = await create_sync_coordinator(settings)
    await coordinator.start()

    tables = args.tables or list(settings.tables)
    for table in tables:
        coordinator.watch(table, args.filter)

    try:
        if args.once:
            report = await coordinator.sync_now()
            logger.info(f"Sync finished: {report.to_dict()}")
            return 0 if report.remaining == 0 else 1

        while True:
            health = coordinator.get_health_status()
            # Picks up dead-letter retries and discards made from the dashboard
            if health.is_online and (health.pending_count or coordinator.store.get_meta(STALE_ENTITIES_KEY)):
                await coordinator.sync_now()
                health = coordinator.get_health_status()
            logger.info(
                f"{health.state.value} | {'online' if health.is_online else 'offline'} | "
                f"channels {sum(1 for s in health.subscriptions.values() if s.value == 'connected')}"
                f"/{len(health.subscriptions)} | pending {health.pending_count} | "
                f"dead-letter {health.dead_letter_count} | conflicts {health.conflict_count}"
            )
            coordinator.publish_status()
            await asyncio.sleep(args.interval)
    finally:
        await coordinator.stop()
        # Stopped state for the dashboard
        coordinator.publish_status()
        coordinator.store.close()


def main() -> int:
    parser = argparse.ArgumentParser(description="Run the Reva sync agent")
    parser.add_argument("--config", help="Path to secrets.toml (default: .streamlit/secrets.toml)")
    parser.add_argument("--table", dest="tables", action="append", help="Table to watch (repeatable)")
    parser.add_argument("--filter", help="Row filter for every channel, e.g. user_id=eq.42")
    parser.add_argument("--once", action="store_true", help="Drain and catch up once, then exit")
    parser.add_argument("--interval", type=float, default=15.0, help="Seconds between health log lines")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")
    args = parser.parse_args()

    setup_logging(level=logging.DEBUG if args.debug else logging.INFO)

    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 0
    except SyncCoreError as e:
        handle_error(e, context="Sync agent")
        return 2


if __name__ == "__main__":
    sys.exit(main())
