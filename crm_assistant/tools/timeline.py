"""Milestone timeline for a new transaction.

Milestones sit at fixed day offsets from the contract date, except loan
approval (70% of the span) and the last two, which are anchored to the
closing date.  On short spans a fixed offset can land after closing; every
offset is clamped into ``[0, span]`` so no milestone falls outside the
contract-to-closing window.
"""

from __future__ import annotations

import math
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any


@dataclass(frozen=True)
class Milestone:
    title: str
    description: str
    offset: Callable[[int], int]


MILESTONES: tuple[Milestone, ...] = (
    Milestone("Contract Signed", "Purchase agreement executed", lambda span: 0),
    Milestone("Home Inspection", "Schedule and complete home inspection", lambda span: 7),
    Milestone("Inspection Response", "Respond to inspection findings", lambda span: 10),
    Milestone("Appraisal", "Property appraisal completed", lambda span: 14),
    Milestone("Loan Approval", "Final loan approval from lender", lambda span: math.floor(span * 0.7)),
    Milestone("Final Walkthrough", "Buyer final property walkthrough", lambda span: span - 2),
    Milestone("Closing Day", "Sign documents and transfer ownership", lambda span: span),
)


def parse_iso_date(value: Any, field_name: str) -> date:
    """Parse ``YYYY-MM-DD``; raise ``ValueError`` naming *field_name* otherwise."""
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError:
        raise ValueError(f"{field_name} must be a date in YYYY-MM-DD format, got {value!r}") from None


def generate_timeline(contract_date: date, closing_date: date) -> list[dict[str, Any]]:
    """Return timeline rows (title, description, days_offset, item_order, due_date)."""
    span = (closing_date - contract_date).days
    if span < 0:
        raise ValueError(
            f"closing_date {closing_date.isoformat()} is before contract_date "
            f"{contract_date.isoformat()}"
        )

    items = []
    for order, milestone in enumerate(MILESTONES, start=1):
        offset = min(max(milestone.offset(span), 0), span)
        items.append(
            {
                "title": milestone.title,
                "description": milestone.description,
                "days_offset": offset,
                "item_order": order,
                "due_date": (contract_date + timedelta(days=offset)).isoformat(),
            }
        )
    return items
