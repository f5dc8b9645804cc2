"""Crowdfunding totals for an event.

The running total is never stored. It is recomputed from the complete set of
contribution records on every snapshot, so concurrent or out-of-order writes
from other guests can never make the displayed sum drift from the ledger.
The ledger itself is a demo: no payment capture, idempotency keys or refunds.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from .database import DEFAULT_TARGET_CENTS, Contribution, DonationPrice, Event
from .errors import AuthorizationError, ValidationError

DEMO_PROVIDER = "demo"
STATUS_SUCCEEDED = "succeeded"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FundingSummary:
    sum_cents: int
    percent: int
    target_cents: int

    def as_dict(self) -> dict[str, int]:
        return {"sum_cents": self.sum_cents, "percent": self.percent, "target_cents": self.target_cents}


def effective_target(target_cents: int | None) -> int:
    if not target_cents or target_cents <= 0:
        return DEFAULT_TARGET_CENTS
    return target_cents


def percent_of_target(sum_cents: int, target_cents: int | None) -> int:
    target = effective_target(target_cents)
    # Half-up rounding; round() would use banker's rounding.
    return min(100, math.floor(sum_cents * 100 / target + 0.5))


def summarize_contributions(
    records: Iterable[Mapping[str, Any]], target_cents: int | None = DEFAULT_TARGET_CENTS
) -> FundingSummary:
    """Reduce a complete contribution snapshot to its total and completion percentage."""
    total = sum(int(record.get("amount_cents") or 0) for record in records)
    return FundingSummary(
        sum_cents=total,
        percent=percent_of_target(total, target_cents),
        target_cents=effective_target(target_cents),
    )


def is_pro_active(event: Event | Mapping[str, Any], funding_sum: int) -> bool:
    """Pro features unlock by explicit flag or once the funding target is reached."""
    if isinstance(event, Mapping):
        is_pro = bool(event.get("is_pro"))
        target = event.get("crowdfunding_target_cents")
    else:
        is_pro = event.is_pro
        target = event.crowdfunding_target_cents
    return is_pro or funding_sum >= effective_target(target)


class ContributionAggregator:
    """Holds the summary derived from the latest contribution snapshot."""

    def __init__(self, target_cents: int | None = DEFAULT_TARGET_CENTS) -> None:
        self._target_cents = target_cents
        self._records: list[Mapping[str, Any]] = []
        self.summary = summarize_contributions(self._records, target_cents)

    def apply_snapshot(self, records: Iterable[Mapping[str, Any]]) -> FundingSummary:
        self._records = list(records)
        self.summary = summarize_contributions(self._records, self._target_cents)
        return self.summary

    def set_target(self, target_cents: int | None) -> FundingSummary:
        self._target_cents = target_cents
        self.summary = summarize_contributions(self._records, target_cents)
        return self.summary


def contribution_payload(contribution: Contribution) -> dict[str, Any]:
    return {
        "id": contribution.id,
        "event_id": contribution.event_id,
        "amount_cents": contribution.amount_cents,
        "provider": contribution.provider,
        "status": contribution.status,
        "created_at": contribution.created_at.isoformat(),
    }


def contributions_query(event_id: str):
    def query(session: Session) -> list[dict[str, Any]]:
        rows = session.exec(select(Contribution).where(Contribution.event_id == event_id)).all()
        return [contribution_payload(row) for row in rows]

    return query


def donate(session: Session, event_id: str, amount_cents: int, identity: str | None) -> Contribution:
    """Append one demo contribution for the current guest."""
    if not identity:
        raise AuthorizationError("Sign-in required before contributing.")
    if amount_cents is None or amount_cents <= 0:
        raise ValidationError("Choose an amount greater than zero.")

    contribution = Contribution(
        event_id=event_id,
        amount_cents=int(amount_cents),
        provider=DEMO_PROVIDER,
        status=STATUS_SUCCEEDED,
    )
    session.add(contribution)
    session.commit()
    session.refresh(contribution)
    logger.info("Recorded %s cent contribution for event %s", contribution.amount_cents, event_id)
    return contribution


def load_donation_prices(session: Session) -> list[dict[str, Any]]:
    """Return the active suggested amounts; a failed read degrades to an empty list."""
    try:
        prices = session.exec(
            select(DonationPrice).where(DonationPrice.active == True)  # noqa: E712
        ).all()
    except SQLAlchemyError as exc:
        logger.warning("Could not load donation prices: %s", exc)
        return []
    ordered = sorted(prices, key=lambda price: price.unit_amount or 0)
    return [{"id": price.id, "label": price.label, "unit_amount": price.unit_amount} for price in ordered]
