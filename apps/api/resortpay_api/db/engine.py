"""Database engine builder (single construction point for API, reaper, Alembic).

- Default pool: NullPool (pgbouncer / transaction pooler friendly)
- ENV: RESORTPAY_DB_POOL=nullpool|queuepool (default: nullpool)
- ENV: RESORTPAY_DB_POOL_SIZE / RESORTPAY_DB_MAX_OVERFLOW (queuepool only)
- SQLite URLs (tests/dev) get check_same_thread=False and a busy timeout
"""

import logging
import os
import re
from typing import Any

from sqlalchemy import Engine, NullPool, create_engine
from sqlalchemy.orm import Session, sessionmaker

from resortpay_api.config.env import get_database_url

logger = logging.getLogger(__name__)


def _mask_password(url: str) -> str:
    """Mask password in database URL for safe logging."""
    return re.sub(r"://([^:]+):([^@]+)@", r"://\1:***@", url)


def build_engine(database_url: str | None = None) -> Engine:
    """
    Build SQLAlchemy engine.

    Args:
        database_url: Database URL. If None, resolved via config.env.get_database_url().

    Returns:
        SQLAlchemy Engine instance.

    Raises:
        ValueError: If RESORTPAY_DB_POOL is not a known pool mode.
    """
    url = database_url or get_database_url()

    connect_args: dict[str, Any] = {}
    if url.startswith("sqlite"):
        # get_db sessions open and close on the threadpool while async handlers
        # use them on the event loop; SQLite must allow that
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = 30
    else:
        app_name = os.getenv("RESORTPAY_DB_APPLICATION_NAME", "resortpay-api")
        if app_name:
            connect_args["application_name"] = app_name

    pool_mode = (os.getenv("RESORTPAY_DB_POOL") or "nullpool").lower()

    if pool_mode == "nullpool":
        engine = create_engine(
            url,
            poolclass=NullPool,
            pool_pre_ping=True,
            connect_args=connect_args,
        )
    elif pool_mode == "queuepool":
        engine = create_engine(
            url,
            pool_pre_ping=True,
            pool_size=int(os.getenv("RESORTPAY_DB_POOL_SIZE", "5")),
            max_overflow=int(os.getenv("RESORTPAY_DB_MAX_OVERFLOW", "10")),
            connect_args=connect_args,
        )
    else:
        raise ValueError(
            f"Invalid RESORTPAY_DB_POOL value: {pool_mode}. "
            "Must be 'nullpool' or 'queuepool'."
        )

    logger.debug(
        "Database engine created: pool=%s, url=%s",
        engine.pool.__class__.__name__,
        _mask_password(url),
    )
    return engine


def build_sessionmaker(engine: Engine) -> sessionmaker[Session]:
    """Build sessionmaker with autocommit=False, autoflush=False."""
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)
