"""Daily briefing: what is overdue, due today and due tomorrow.

The briefing is assembled from the store and rendered three ways: a
plain-text summary (returned to the model), an HTML email body and an
SMS body.  Rendering is deterministic; no LLM call is involved.
"""

from __future__ import annotations

import html
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from typing import Any

from crm_assistant.services.store import BusinessDataStore

SMS_MAX_LENGTH = 1600


@dataclass
class DailyBriefing:
    """Deadline buckets for one user on one day."""

    user_name: str
    day: date
    overdue: list[dict[str, Any]] = field(default_factory=list)
    today: list[dict[str, Any]] = field(default_factory=list)
    tomorrow: list[dict[str, Any]] = field(default_factory=list)
    active_deals_count: int = 0

    @property
    def urgent_count(self) -> int:
        return len(self.overdue) + len(self.today)

    @property
    def urgency(self) -> str:
        if self.urgent_count == 0:
            return "light"
        return "moderate" if self.urgent_count <= 2 else "high"

    def counts(self) -> dict[str, Any]:
        return {
            "overdue": len(self.overdue),
            "today": len(self.today),
            "tomorrow": len(self.tomorrow),
            "active_deals": self.active_deals_count,
            "urgency": self.urgency,
        }


def first_name(profile: dict[str, Any] | None) -> str:
    full_name = (profile or {}).get("full_name") or ""
    return full_name.split()[0] if full_name.strip() else "there"


def build_daily_briefing(
    store: BusinessDataStore,
    user_id: str,
    *,
    today: date | None = None,
    profile: dict[str, Any] | None = None,
) -> DailyBriefing:
    """Bucket the user's incomplete timeline items relative to *today*."""
    today = today or datetime.now(UTC).date()
    today_str = today.isoformat()
    tomorrow_str = (today + timedelta(days=1)).isoformat()

    briefing = DailyBriefing(user_name=first_name(profile), day=today)
    for item in store.open_deadlines(user_id):
        due = item.get("due_date") or ""
        if due < today_str:
            briefing.overdue.append(item)
        elif due == today_str:
            briefing.today.append(item)
        elif due == tomorrow_str:
            briefing.tomorrow.append(item)
    briefing.active_deals_count = len(store.active_transactions(user_id))
    return briefing


# ── Renderers ────────────────────────────────────────────────────────


def _item_text(item: dict[str, Any]) -> str:
    return (
        f"{item.get('title', 'Untitled')} - {item.get('property_address', '')} "
        f"({item.get('client_name', 'Unknown client')})"
    )


def render_text_summary(briefing: DailyBriefing) -> str:
    """Short plain-text summary, used as the tool result and email lead."""
    lines = [
        f"Good morning, {briefing.user_name}!",
        "",
        f"You have {len(briefing.today)} tasks due today and "
        f"{briefing.active_deals_count} active deals in progress.",
    ]
    if briefing.overdue:
        lines.append(f"{len(briefing.overdue)} item(s) are overdue:")
        lines.extend(f"  - {_item_text(i)}" for i in briefing.overdue)
    if briefing.today:
        lines.append("Today's priorities:")
        lines.extend(f"  - {_item_text(i)}" for i in briefing.today)
    if briefing.tomorrow:
        lines.append("Tomorrow:")
        lines.extend(f"  - {_item_text(i)}" for i in briefing.tomorrow)
    lines.append("")
    lines.append(
        "Focus on your urgent deadlines first."
        if briefing.urgent_count
        else "You are all caught up - great work!"
    )
    return "\n".join(lines)


def _html_section(title: str, items: list[dict[str, Any]], css: str = "section") -> str:
    rows = "".join(
        f"<li><strong>{html.escape(i.get('title', 'Untitled'))}</strong><br>"
        f"{html.escape(i.get('property_address', ''))} - "
        f"{html.escape(i.get('client_name', 'Unknown client'))}</li>"
        for i in items
    )
    return (
        f'<div class="{css}"><h3>{html.escape(title)} ({len(items)})</h3>'
        f"<ul>{rows}</ul></div>"
    )


def render_email_subject(briefing: DailyBriefing) -> str:
    return f"Daily Briefing - {briefing.day.strftime('%b')} {briefing.day.day}"


def render_email_html(briefing: DailyBriefing) -> str:
    """HTML body for the briefing email."""
    summary = html.escape(render_text_summary(briefing)).replace("\n", "<br>")
    sections = []
    if briefing.overdue:
        sections.append(_html_section("Overdue Items", briefing.overdue, "section urgent"))
    if briefing.today:
        sections.append(_html_section("Today's Priorities", briefing.today))
    else:
        sections.append(
            '<div class="section"><h3>No Deadlines Today!</h3>'
            "<p>You're all caught up. Focus on nurturing leads or preparing "
            "for tomorrow.</p></div>"
        )
    if briefing.tomorrow:
        sections.append(_html_section("Tomorrow's Tasks", briefing.tomorrow))
    stats = (
        '<div class="section"><h3>Quick Stats</h3>'
        f"<p><strong>Active Deals:</strong> {briefing.active_deals_count}</p>"
        f"<p><strong>Today's Tasks:</strong> {len(briefing.today)}</p>"
        f"<p><strong>Tomorrow's Tasks:</strong> {len(briefing.tomorrow)}</p></div>"
    )
    return (
        "<!DOCTYPE html><html><body>"
        f"<h1>Good Morning, {html.escape(briefing.user_name)}!</h1>"
        f"<p>{briefing.day.strftime('%A, %B')} {briefing.day.day}, {briefing.day.year}</p>"
        f'<div class="section"><h3>Daily Summary</h3><p>{summary}</p></div>'
        + "".join(sections)
        + stats
        + "</body></html>"
    )


def render_sms(briefing: DailyBriefing) -> str:
    """SMS body, truncated to the carrier concatenation limit."""
    lines = [f"Good morning, {briefing.user_name}! Daily briefing:"]
    if briefing.overdue:
        lines.append(f"OVERDUE ({len(briefing.overdue)}):")
        lines.extend(f"- {_item_text(i)}" for i in briefing.overdue)
    lines.append(f"TODAY ({len(briefing.today)}):")
    if briefing.today:
        lines.extend(f"- {_item_text(i)}" for i in briefing.today)
    else:
        lines.append("- None, all caught up!")
    if briefing.tomorrow:
        lines.append(f"TOMORROW ({len(briefing.tomorrow)}):")
        lines.extend(f"- {_item_text(i)}" for i in briefing.tomorrow)
    lines.append(f"Active deals: {briefing.active_deals_count}")
    body = "\n".join(lines)
    if len(body) > SMS_MAX_LENGTH:
        body = body[: SMS_MAX_LENGTH - 3] + "..."
    return body
