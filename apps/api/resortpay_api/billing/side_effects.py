"""Side-effect dispatcher for settled payments.

Side effects are best-effort: they run after the ledger entry and the
reference status update are committed, and nothing they do can change the
webhook acknowledgement. A failing effect is logged, counted and written to
side_effect_dead_letters; the reaper retry loop replays it on the schedule
1m → 5m → 30m → 2h → 24h, then parks it in manual_review.

Loyalty accrual (the only registered effect):
    points = floor(floor(amount * POINTS_PER_DOLLAR) * tier multiplier)
    bronze 1.0, silver 1.25, gold 1.5, platinum 2.0
Tier is recomputed from lifetime points and only ever upgrades.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import ROUND_FLOOR, Decimal
from typing import Optional, Protocol

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from resortpay_api.billing.ledger import is_unique_violation
from resortpay_api.billing.references import ReferenceHandle, ReferenceRegistry, default_registry
from resortpay_api.db.models import LoyaltyAccount, LoyaltyTransaction, SideEffectDeadLetter
from resortpay_api.observability.metrics import log_loyalty_points_awarded, log_side_effect_failure
from resortpay_api.utils.money import format_amount
from resortpay_api.utils.sanitize import sanitize_str

logger = logging.getLogger(__name__)

# ── Retry schedule ────────────────────────────────────────────────────────────
RETRY_DELAYS: tuple[timedelta, ...] = (
    timedelta(minutes=1),
    timedelta(minutes=5),
    timedelta(minutes=30),
    timedelta(hours=2),
    timedelta(hours=24),
)
MAX_RETRIES = len(RETRY_DELAYS)


def next_retry_delay(retry_count: int) -> Optional[timedelta]:
    """Delay before attempt number retry_count+1, or None once exhausted."""
    if retry_count < 0 or retry_count >= MAX_RETRIES:
        return None
    return RETRY_DELAYS[retry_count]


# ── Loyalty rules ─────────────────────────────────────────────────────────────
POINTS_PER_DOLLAR = 10
POINTS_EXPIRATION_DAYS = 365

TIER_MULTIPLIERS: dict[str, Decimal] = {
    "bronze": Decimal("1.0"),
    "silver": Decimal("1.25"),
    "gold": Decimal("1.5"),
    "platinum": Decimal("2.0"),
}

# (tier, min lifetime points), highest first
TIER_THRESHOLDS: tuple[tuple[str, int], ...] = (
    ("platinum", 15000),
    ("gold", 5000),
    ("silver", 1000),
    ("bronze", 0),
)

_TIER_ORDER = ["bronze", "silver", "gold", "platinum"]


def calculate_points(amount: Decimal, tier: str = "bronze") -> int:
    base = (amount * POINTS_PER_DOLLAR).to_integral_value(rounding=ROUND_FLOOR)
    multiplier = TIER_MULTIPLIERS.get(tier, TIER_MULTIPLIERS["bronze"])
    return int((base * multiplier).to_integral_value(rounding=ROUND_FLOOR))


def tier_for_lifetime_points(lifetime_points: int) -> str:
    for tier, min_points in TIER_THRESHOLDS:
        if lifetime_points >= min_points:
            return tier
    return "bronze"


class SideEffect(Protocol):
    name: str

    def __call__(self, db: Session, handle: ReferenceHandle, amount: Decimal) -> None: ...


class LoyaltyAccrual:
    """Credit loyalty points to the owner of a paid reference.

    At most one earn transaction exists per reference (unique key), so a
    replay after a partial failure cannot credit twice.
    """

    name = "loyalty_accrual"

    def __call__(self, db: Session, handle: ReferenceHandle, amount: Decimal) -> None:
        user_id = handle.resolve_owner(db)
        if not user_id:
            logger.info("LOYALTY_SKIPPED_NO_OWNER", extra={"reference": handle.label})
            return

        already = db.execute(
            select(LoyaltyTransaction.id).where(
                LoyaltyTransaction.type == "earn",
                LoyaltyTransaction.reference_type == handle.kind.value,
                LoyaltyTransaction.reference_id == handle.reference_id,
            )
        ).first()
        if already is not None:
            logger.info("LOYALTY_ALREADY_CREDITED", extra={"reference": handle.label})
            return

        account = db.execute(
            select(LoyaltyAccount).where(LoyaltyAccount.user_id == user_id)
        ).scalar_one_or_none()
        if account is None:
            account = LoyaltyAccount(user_id=user_id, tier="bronze", available_points=0, lifetime_points=0)
            db.add(account)
            db.flush()

        points = calculate_points(amount, account.tier)
        if points <= 0:
            return

        db.add(
            LoyaltyTransaction(
                account_id=account.id,
                type="earn",
                points=points,
                reference_type=handle.kind.value,
                reference_id=handle.reference_id,
                description=f"Points earned for {handle.kind.value} {handle.reference_id}",
                expires_at=datetime.now(timezone.utc) + timedelta(days=POINTS_EXPIRATION_DAYS),
            )
        )
        account.available_points += points
        account.lifetime_points += points

        new_tier = tier_for_lifetime_points(account.lifetime_points)
        if _TIER_ORDER.index(new_tier) > _TIER_ORDER.index(account.tier):
            logger.info(
                "LOYALTY_TIER_UPGRADED",
                extra={"user_id": user_id, "previous": account.tier, "current": new_tier},
            )
            account.tier = new_tier

        try:
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            if is_unique_violation(exc):
                # Concurrent replay won the unique earn row
                logger.info("LOYALTY_ALREADY_CREDITED", extra={"reference": handle.label})
                return
            raise

        log_loyalty_points_awarded(
            user_id=user_id,
            points=points,
            reference_type=handle.kind.value,
            reference_id=handle.reference_id,
            tier=account.tier,
        )


DEFAULT_EFFECTS: tuple[SideEffect, ...] = (LoyaltyAccrual(),)


@dataclass
class DispatchOutcome:
    succeeded: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


class SideEffectDispatcher:
    """Runs side effects for a settled reference. dispatch() never raises."""

    def __init__(
        self,
        db: Session,
        registry: Optional[ReferenceRegistry] = None,
        effects: Optional[tuple[SideEffect, ...]] = None,
    ):
        self.db = db
        self.registry = registry or default_registry
        self.effects = DEFAULT_EFFECTS if effects is None else effects

    def effect_named(self, name: str) -> Optional[SideEffect]:
        for effect in self.effects:
            if effect.name == name:
                return effect
        return None

    def run_effect(
        self, effect: SideEffect, reference_type: str, reference_id: str, amount: Decimal
    ) -> None:
        """Run one effect; exceptions propagate (used by dispatch and by replays)."""
        handle = self.registry.resolve(reference_type, reference_id)
        effect(self.db, handle, amount)

    def dispatch(
        self,
        reference_type: str,
        reference_id: str,
        amount: Decimal,
        *,
        webhook_id: Optional[str] = None,
    ) -> DispatchOutcome:
        outcome = DispatchOutcome()
        for effect in self.effects:
            try:
                self.run_effect(effect, reference_type, reference_id, amount)
            except Exception as exc:
                self.db.rollback()
                outcome.failed.append(effect.name)
                logger.warning(
                    "SIDE_EFFECT_FAILED",
                    exc_info=True,
                    extra={
                        "effect": effect.name,
                        "reference_type": reference_type,
                        "reference_id": reference_id,
                        "error_type": type(exc).__name__,
                    },
                )
                log_side_effect_failure(
                    effect=effect.name,
                    reference_type=reference_type,
                    reference_id=reference_id,
                    error_type=type(exc).__name__,
                )
                self._dead_letter(effect.name, reference_type, reference_id, amount, webhook_id, exc)
            else:
                outcome.succeeded.append(effect.name)
        return outcome

    def _dead_letter(
        self,
        effect_name: str,
        reference_type: str,
        reference_id: str,
        amount: Decimal,
        webhook_id: Optional[str],
        exc: Exception,
    ) -> None:
        try:
            self.db.add(
                SideEffectDeadLetter(
                    effect=effect_name,
                    reference_type=reference_type,
                    reference_id=reference_id,
                    amount=format_amount(amount),
                    webhook_id=webhook_id,
                    payload={"amount": format_amount(amount)},
                    status="pending",
                    error_message=sanitize_str(f"{type(exc).__name__}: {exc}")[:500],
                    retry_count=0,
                    max_retries=MAX_RETRIES,
                    next_retry_at=datetime.now(timezone.utc) + RETRY_DELAYS[0],
                )
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.error(
                "SIDE_EFFECT_DEAD_LETTER_WRITE_FAILED",
                exc_info=True,
                extra={
                    "effect": effect_name,
                    "reference_type": reference_type,
                    "reference_id": reference_id,
                    "webhook_id": webhook_id,
                },
            )
