"""ResortPay Reaper main entry point.

Side-effect retry loop:
   - Scan: side_effect_dead_letters due for retry (pending/retrying, next_retry_at <= NOW())
   - Replay: loyalty accrual and any other registered effect
   - Schedule: 1m → 5m → 30m → 2h → 24h, then manual_review
   - Interval: 60 seconds
"""

import logging
import os
import threading
from pathlib import Path

from resortpay_api.config.env import get_database_url, is_json_logging_enabled
from resortpay_api.db.engine import build_engine, build_sessionmaker
from resortpay_api.utils import configure_json_logging
from resortpay_reaper.loops.side_effect_retry_loop import install_signal_handlers, side_effect_retry_loop

if is_json_logging_enabled():
    configure_json_logging(log_level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)

READY_FILE_PATH = "/tmp/resortpay-reaper-ready"


def main() -> None:
    """Run the retry loop in a worker thread until SIGTERM/SIGINT."""
    Path(READY_FILE_PATH).unlink(missing_ok=True)

    # Fail-fast in production when DATABASE_URL is missing
    database_url = get_database_url()

    retry_interval_sec = int(os.getenv("RETRY_LOOP_INTERVAL_SEC", "60"))
    retry_scan_limit = int(os.getenv("RETRY_SCAN_LIMIT", "100"))

    engine = build_engine(database_url)
    SessionLocal = build_sessionmaker(engine)

    install_signal_handlers()

    logger.info(f"Side-effect retry loop: interval={retry_interval_sec}s, limit={retry_scan_limit}")

    retry_thread = threading.Thread(
        target=side_effect_retry_loop,
        kwargs={
            "session_factory": SessionLocal,
            "interval_seconds": retry_interval_sec,
            "limit_per_scan": retry_scan_limit,
        },
        name="SideEffectRetryLoop",
        daemon=False,
    )

    try:
        retry_thread.start()

        with open(READY_FILE_PATH, "w") as f:
            f.write("ready\n")
        logger.info(f"Readiness file created: {READY_FILE_PATH}")

        retry_thread.join()

    except KeyboardInterrupt:
        logger.info("Reaper stopped by user (KeyboardInterrupt)")

    finally:
        Path(READY_FILE_PATH).unlink(missing_ok=True)
        engine.dispose()
        logger.info("Reaper shutdown complete")


if __name__ == "__main__":
    main()
