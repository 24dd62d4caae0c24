"""
Main application entry point.
"""

import logging
import signal
import threading

from dotenv import load_dotenv

load_dotenv()

from insight_delivery.app import InsightDeliveryApp
from insight_delivery.config import load_config
from insight_delivery.database.connection import Database

logger = logging.getLogger(__name__)


def main():
    """CLI entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Insight Delivery Service")
    parser.add_argument(
        "--config", default="config.yaml", help="Path to config file"
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")
    parser.add_argument(
        "--once", action="store_true", help="Run a single cycle and exit"
    )
    parser.add_argument(
        "--dry-run", action="store_true", help="Schedule jobs without delivering them"
    )

    args = parser.parse_args()

    # Load config
    config = load_config(args.config)

    # Setup logging
    log_level = logging.DEBUG if args.debug else getattr(
        logging, config.advanced.log_level.upper(), logging.INFO
    )
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    # Initialize database
    db = Database(config.database.path)
    db.initialize()

    app = InsightDeliveryApp(db=db, config=config)

    try:
        if args.once or args.dry_run:
            if args.dry_run:
                logger.info("Dry run mode - no notifications will be sent")
            result = app.run_cycle(dry_run=args.dry_run)
            logger.info(
                f"Cycle done: {len(result.scheduled.created)} job(s) created, "
                f"{len(result.reports)} job(s) processed"
            )
        else:
            stop_event = threading.Event()

            def _stop(signum, frame):
                logger.info(f"Received signal {signum}, shutting down")
                stop_event.set()

            signal.signal(signal.SIGINT, _stop)
            signal.signal(signal.SIGTERM, _stop)
            app.run_forever(stop_event)
    finally:
        app.close()
        db.close()


if __name__ == "__main__":
    main()
