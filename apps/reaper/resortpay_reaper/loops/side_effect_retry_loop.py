"""Retry loop for dead-lettered side effects.

- Scan: status IN ('pending', 'retrying') AND next_retry_at <= NOW()
- Claim: CAS on (status, retry_count, next_retry_at) that pushes next_retry_at
  out by CLAIM_LEASE, so two reapers never replay the same row; a claim
  whose reaper died is picked up again once the lease expires
- Replay: SideEffectDispatcher.run_effect (exceptions propagate here)
- Success → resolved; failure → rescheduled 5m → 30m → 2h → 24h, then manual_review
- Interval: 60 seconds (configurable)
"""

import logging
import signal
import threading
import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy import and_, select, update
from sqlalchemy.orm import Session

from resortpay_api.billing.side_effects import SideEffectDispatcher, next_retry_delay
from resortpay_api.db.models import SideEffectDeadLetter
from resortpay_api.observability.metrics import log_dead_letter_exhausted, log_side_effect_failure
from resortpay_api.utils.sanitize import sanitize_str

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = ("pending", "retrying")
CLAIM_LEASE = timedelta(minutes=10)

# Global shutdown event for graceful termination
_shutdown_event = threading.Event()


def _signal_handler(signum, frame):
    """Handle shutdown signals (SIGTERM, SIGINT) gracefully."""
    sig_name = signal.Signals(signum).name
    logger.info(f"Received {sig_name} signal, initiating graceful shutdown...")
    _shutdown_event.set()


def install_signal_handlers() -> None:
    """Register SIGTERM/SIGINT handlers (main thread only)."""
    signal.signal(signal.SIGTERM, _signal_handler)
    signal.signal(signal.SIGINT, _signal_handler)


def request_shutdown() -> None:
    _shutdown_event.set()


def scan_due_dead_letters(
    db: Session, limit: int = 100, now: Optional[datetime] = None
) -> list[SideEffectDeadLetter]:
    """Dead letters whose next retry is due, oldest first."""
    now = now or datetime.now(timezone.utc)

    stmt = (
        select(SideEffectDeadLetter)
        .where(
            and_(
                SideEffectDeadLetter.status.in_(RETRYABLE_STATUSES),
                SideEffectDeadLetter.next_retry_at <= now,
            )
        )
        .order_by(SideEffectDeadLetter.next_retry_at, SideEffectDeadLetter.id)
        .limit(limit)
    )
    dead_letters = list(db.execute(stmt).scalars().all())

    if dead_letters:
        logger.info(
            f"Retry scan found {len(dead_letters)} due dead letters",
            extra={"due_count": len(dead_letters), "scan_limit": limit},
        )
    return dead_letters


def _claim(db: Session, dead_letter_id: int, retry_count: int, now: Optional[datetime] = None) -> bool:
    """Lease a due dead letter; False when another reaper got there first."""
    now = now or datetime.now(timezone.utc)
    result = db.execute(
        update(SideEffectDeadLetter)
        .where(
            and_(
                SideEffectDeadLetter.id == dead_letter_id,
                SideEffectDeadLetter.status.in_(RETRYABLE_STATUSES),
                SideEffectDeadLetter.retry_count == retry_count,
                SideEffectDeadLetter.next_retry_at <= now,
            )
        )
        .values(status="retrying", next_retry_at=now + CLAIM_LEASE, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def _park(db: Session, dead_letter_id: int, error_message: str) -> None:
    """Move a dead letter to manual_review."""
    dead_letter = db.get(SideEffectDeadLetter, dead_letter_id, populate_existing=True)
    dead_letter.status = "manual_review"
    dead_letter.next_retry_at = None
    dead_letter.error_message = error_message[:500]
    db.commit()
    log_dead_letter_exhausted(
        dead_letter_id=dead_letter.id,
        effect=dead_letter.effect,
        reference_type=dead_letter.reference_type,
        reference_id=dead_letter.reference_id,
        retry_count=dead_letter.retry_count,
    )


def retry_dead_letter(
    dead_letter: SideEffectDeadLetter,
    db: Session,
    dispatcher: SideEffectDispatcher,
) -> str:
    """Replay one dead letter.

    Returns:
        "resolved", "rescheduled", "manual_review" or "lost_race"
    """
    dead_letter_id = dead_letter.id
    effect_name = dead_letter.effect
    reference_type = dead_letter.reference_type
    reference_id = dead_letter.reference_id
    amount = Decimal(dead_letter.amount)
    retry_count = dead_letter.retry_count

    if not _claim(db, dead_letter_id, retry_count):
        logger.debug(
            f"Retry lost race for dead letter {dead_letter_id}",
            extra={"dead_letter_id": dead_letter_id, "outcome": "lost_race"},
        )
        return "lost_race"

    effect = dispatcher.effect_named(effect_name)
    if effect is None:
        logger.error(
            f"No side effect registered as {effect_name!r}; parking dead letter {dead_letter_id}",
            extra={"dead_letter_id": dead_letter_id, "effect": effect_name},
        )
        _park(db, dead_letter_id, f"Unknown effect {effect_name!r}")
        return "manual_review"

    try:
        dispatcher.run_effect(effect, reference_type, reference_id, amount)
    except Exception as exc:
        db.rollback()
        attempts = retry_count + 1
        error_message = sanitize_str(f"{type(exc).__name__}: {exc}")
        log_side_effect_failure(
            effect=effect_name,
            reference_type=reference_type,
            reference_id=reference_id,
            error_type=type(exc).__name__,
            retry_count=attempts,
        )

        dead_letter = db.get(SideEffectDeadLetter, dead_letter_id, populate_existing=True)
        dead_letter.retry_count = attempts
        delay = next_retry_delay(attempts)
        if delay is None or attempts >= dead_letter.max_retries:
            db.commit()
            _park(db, dead_letter_id, error_message)
            return "manual_review"

        dead_letter.status = "pending"
        dead_letter.error_message = error_message[:500]
        dead_letter.next_retry_at = datetime.now(timezone.utc) + delay
        db.commit()
        logger.info(
            f"Dead letter {dead_letter_id} rescheduled in {int(delay.total_seconds())}s",
            extra={
                "dead_letter_id": dead_letter_id,
                "effect": effect_name,
                "retry_count": attempts,
                "outcome": "rescheduled",
            },
        )
        return "rescheduled"

    dead_letter = db.get(SideEffectDeadLetter, dead_letter_id, populate_existing=True)
    dead_letter.status = "resolved"
    dead_letter.resolved_at = datetime.now(timezone.utc)
    dead_letter.next_retry_at = None
    db.commit()
    logger.info(
        f"Dead letter {dead_letter_id} resolved",
        extra={
            "dead_letter_id": dead_letter_id,
            "effect": effect_name,
            "reference_type": reference_type,
            "reference_id": reference_id,
            "outcome": "resolved",
        },
    )
    return "resolved"


def side_effect_retry_loop(
    session_factory: Callable[[], Session],
    interval_seconds: int = 60,
    limit_per_scan: int = 100,
    stop_after_one_iteration: bool = False,
    dispatcher_factory: Optional[Callable[[Session], SideEffectDispatcher]] = None,
) -> None:
    """Periodically replay due dead letters.

    Args:
        session_factory: Session factory (one session per iteration)
        interval_seconds: Sleep interval between scans (default 60)
        limit_per_scan: Max dead letters per iteration (default 100)
        stop_after_one_iteration: For testing only - exit after one scan
        dispatcher_factory: Builds the dispatcher for a session (tests inject failing effects)
    """
    dispatcher_factory = dispatcher_factory or SideEffectDispatcher

    logger.info(
        f"Side-effect retry loop started (interval={interval_seconds}s, limit={limit_per_scan})"
    )

    iteration = 0
    totals = {"resolved": 0, "rescheduled": 0, "manual_review": 0, "lost_race": 0}

    while not _shutdown_event.is_set():
        iteration += 1
        iteration_start = time.time()

        db = session_factory()
        try:
            dispatcher = dispatcher_factory(db)
            due = scan_due_dead_letters(db, limit=limit_per_scan)
            counts = dict.fromkeys(totals, 0)

            for dead_letter in due:
                try:
                    outcome = retry_dead_letter(dead_letter, db, dispatcher)
                except Exception as e:
                    db.rollback()
                    logger.error(
                        f"Retry unexpected error for dead letter {dead_letter.id}: {e}",
                        exc_info=True,
                        extra={"outcome": "unexpected_error"},
                    )
                    continue
                counts[outcome] += 1

            for key, value in counts.items():
                totals[key] += value

            if due:
                logger.info(
                    f"Retry iteration {iteration}: {counts['resolved']} resolved, "
                    f"{counts['rescheduled']} rescheduled, {counts['manual_review']} parked",
                    extra={
                        "iteration": iteration,
                        "scanned": len(due),
                        "duration_ms": int((time.time() - iteration_start) * 1000),
                        **counts,
                    },
                )
        except Exception as e:
            logger.error(f"Retry loop error in iteration {iteration}: {e}", exc_info=True)
        finally:
            db.close()

        if stop_after_one_iteration:
            logger.info("Retry loop stopping after one iteration (test mode)")
            break

        # Interruptible sleep - allows immediate shutdown on signal
        _shutdown_event.wait(interval_seconds)

    logger.info(
        f"Side-effect retry loop stopped after {iteration} iterations",
        extra={"total_iterations": iteration, **{f"total_{k}": v for k, v in totals.items()}},
    )
