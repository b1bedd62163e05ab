"""Briefing tools: send a briefing now, save a schedule, brief one client."""

from __future__ import annotations

import logging
import re
from datetime import UTC, datetime, timedelta
from typing import Any

from crm_assistant.models import Message
from crm_assistant.prompts import get_client_brief_prompt
from crm_assistant.providers.base import ProviderAdapter, ProviderError
from crm_assistant.services.briefing import (
    build_daily_briefing,
    render_email_html,
    render_email_subject,
    render_sms,
    render_text_summary,
)
from crm_assistant.services.notifications import NotificationError
from crm_assistant.tools.crm import choice_arg, flag_arg, resolve_client, text_arg
from crm_assistant.tools.executor import ToolExecutionError
from crm_assistant.tools.registry import ToolContext, tool_definition

logger = logging.getLogger(__name__)

BRIEF_TTL = timedelta(hours=24)
WEEKDAYS = ("Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday")
_TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def _profile(ctx: ToolContext) -> dict[str, Any]:
    profile = ctx.store.get_user_profile(ctx.user_id)
    if profile is None:
        raise ToolExecutionError("User profile not found")
    return profile


def _notifier(ctx: ToolContext):
    if ctx.notifier is None:
        raise ToolExecutionError("Notifications are not configured")
    return ctx.notifier


# ── Send now ────────────────────────────────────────────────────────


@tool_definition(
    "send_email_briefing",
    "Sends an email briefing with today's and tomorrow's deadlines to the user",
)
def send_email_briefing(ctx: ToolContext, arguments: dict[str, Any]) -> dict[str, Any]:
    profile = _profile(ctx)
    if not profile.get("email"):
        raise ToolExecutionError("No email address on file for this user")
    notifier = _notifier(ctx)

    briefing = build_daily_briefing(ctx.store, ctx.user_id, today=ctx.today, profile=profile)
    try:
        sent = notifier.send_email(
            profile["email"], render_email_subject(briefing), render_email_html(briefing),
        )
    except NotificationError as exc:
        raise ToolExecutionError(f"Failed to send email briefing: {exc}") from exc
    return {
        "email_id": sent.get("id"),
        "summary": render_text_summary(briefing),
        "counts": briefing.counts(),
        "message": f"Email briefing sent to {profile['email']}.",
    }


@tool_definition(
    "send_sms_briefing",
    "Sends an SMS text message briefing to the user's phone",
)
def send_sms_briefing(ctx: ToolContext, arguments: dict[str, Any]) -> dict[str, Any]:
    profile = _profile(ctx)
    if not profile.get("phone"):
        raise ToolExecutionError("No phone number on file for this user")
    notifier = _notifier(ctx)

    briefing = build_daily_briefing(ctx.store, ctx.user_id, today=ctx.today, profile=profile)
    try:
        sent = notifier.send_sms(profile["phone"], render_sms(briefing))
    except NotificationError as exc:
        raise ToolExecutionError(f"Failed to send SMS briefing: {exc}") from exc
    return {
        "sms_sid": sent.get("sid"),
        "counts": briefing.counts(),
        "message": "SMS briefing sent successfully! Check your phone.",
    }


# ── Schedule ────────────────────────────────────────────────────────


@tool_definition(
    "set_briefing_schedule",
    "Sets up automated email or SMS briefings at a specific time. "
    "User can choose daily or weekly frequency.",
    properties={
        "frequency": {
            "type": "string",
            "enum": ["daily", "weekly"],
            "description": "How often to send briefings",
        },
        "time": {
            "type": "string",
            "description": "Time to send briefing in HH:MM format (24-hour, e.g. '06:00' for 6 AM)",
        },
        "day_of_week": {
            "type": "integer",
            "minimum": 0,
            "maximum": 6,
            "description": "For weekly: day of week (0=Sunday, 1=Monday, etc.). Not needed for daily.",
        },
        "channel": {
            "type": "string",
            "enum": ["email", "sms"],
            "description": "Delivery channel (defaults to email)",
        },
        "enabled": {
            "type": "boolean",
            "description": "Turn the scheduled briefing on (true, default) or off (false)",
        },
    },
    required=["frequency", "time"],
)
def set_briefing_schedule(ctx: ToolContext, arguments: dict[str, Any]) -> dict[str, Any]:
    frequency = choice_arg(arguments, "frequency", ("daily", "weekly"))
    time_of_day = text_arg(arguments, "time")
    if not _TIME_RE.match(time_of_day):
        raise ToolExecutionError(f"time must be HH:MM in 24-hour format (got {time_of_day!r})")
    channel = choice_arg({"channel": arguments.get("channel") or "email"}, "channel", ("email", "sms"))
    enabled = flag_arg(arguments, "enabled", True)

    day = arguments.get("day_of_week")
    if day is None or frequency == "daily":
        day = 1
    try:
        day = int(day)
    except (TypeError, ValueError):
        raise ToolExecutionError("day_of_week must be a number from 0 to 6") from None
    if not 0 <= day <= 6:
        raise ToolExecutionError("day_of_week must be a number from 0 to 6")

    prefs = {
        f"{channel}_enabled": enabled,
        f"{channel}_frequency": frequency,
        f"{channel}_time": time_of_day,
        f"{channel}_day": day,
    }
    saved = ctx.store.update_briefing_preferences(ctx.user_id, prefs)

    if not enabled:
        message = f"Scheduled {channel} briefings are turned off."
    else:
        when = f"every day at {time_of_day}" if frequency == "daily" else (
            f"every {WEEKDAYS[day]} at {time_of_day}"
        )
        label = "email" if channel == "email" else "SMS"
        message = f"Briefing schedule set! You'll receive automated {label} briefings {when}."
    return {"preferences": saved, "message": message}


# ── Client brief ────────────────────────────────────────────────────


def _engagement(client: dict[str, Any]) -> str:
    minutes = client.get("avg_response_time")
    if not minutes:
        return "Engagement pattern unknown"
    if minutes < 180:
        return "Responds quickly, typically within a couple hours"
    if minutes < 1440:
        return "Responds within a day"
    return "Takes several days to respond"


def _looking_for(client: dict[str, Any]) -> str:
    prefs = client.get("property_preferences") or {}
    if not prefs:
        return "property details not yet specified"
    text = f"{prefs.get('type') or 'property'} in {prefs.get('location') or 'the area'}"
    low, high = prefs.get("budget_min"), prefs.get("budget_max")
    if low and high:
        text += f" (${int(low) // 1000}k-${int(high) // 1000}k budget)"
    return text


def _contact_times(client: dict[str, Any]) -> str:
    times = (client.get("contact_preferences") or {}).get("preferred_times") or []
    return ", ".join(times) or "not set"


def _cached_brief(client: dict[str, Any], now: datetime) -> str | None:
    content = client.get("brief_content")
    generated = client.get("brief_generated_at")
    if not content or not generated:
        return None
    try:
        generated_at = datetime.fromisoformat(str(generated))
    except ValueError:
        return None
    if generated_at.tzinfo is None:
        generated_at = generated_at.replace(tzinfo=UTC)
    return content if now - generated_at < BRIEF_TTL else None


def gather_brief_facts(
    client: dict[str, Any],
    activity: dict[str, Any],
    transactions: list[dict[str, Any]],
    deadlines: list[dict[str, Any]],
) -> dict[str, Any]:
    """Flatten everything known about one client into the brief's inputs."""
    nxt = deadlines[0] if deadlines else None
    return {
        "name": client["name"],
        "lead_type": client.get("lead_type") or "buyer",
        "status": client.get("status") or "unknown",
        "ai_ranking": client.get("ai_ranking") or "medium",
        "looking_for": _looking_for(client),
        "engagement": _engagement(client),
        "unread_messages": activity.get("unread_messages", 0),
        "last_conversation": activity.get("last_conversation") or "no recent conversations recorded",
        "key_notes": "; ".join(activity.get("key_notes") or []) or "none",
        "contact_preferences": _contact_times(client),
        "active_transactions": len(transactions),
        "next_deadline": f"{nxt['title']} on {nxt['due_date']}" if nxt else "none",
        "deals": [
            f"{t['property_address']} ({t['transaction_type']}), closes {t['closing_date']}"
            for t in transactions
        ],
        "contact": " / ".join(v for v in (client.get("email"), client.get("phone")) if v),
        "notes": client.get("notes"),
    }


def compose_client_brief(facts: dict[str, Any]) -> str:
    """Plain template brief, used when no model is available to write one."""
    lines = [
        f"{facts['name']} is a {facts['status']}, {facts['ai_ranking']}-ranking "
        f"{facts['lead_type']} interested in {facts['looking_for']}.",
        f"Contact: {facts['contact'] or 'no email or phone on file'}",
        f"Engagement: {facts['engagement']}",
    ]
    if facts["unread_messages"]:
        lines.append(f"Unopened messages: {facts['unread_messages']}")
    lines.append(f"Last conversation: {facts['last_conversation']}")
    if facts["key_notes"] != "none":
        lines.append(f"Key notes: {facts['key_notes']}")
    if facts["deals"]:
        lines.append("Active deals:")
        lines.extend(f"- {deal}" for deal in facts["deals"])
    else:
        lines.append("Active deals: none")
    if facts["next_deadline"] != "none":
        lines.append(f"Next deadline: {facts['next_deadline']}")
    if facts["notes"]:
        lines.append(f"Notes: {facts['notes']}")
    return "\n".join(lines)


def write_client_brief(provider: ProviderAdapter | None, facts: dict[str, Any]) -> str | None:
    """Ask the model for a natural-language brief; ``None`` when it cannot."""
    if provider is None:
        return None
    try:
        reply = provider.send([Message.user(get_client_brief_prompt(facts))], [])
    except ProviderError as exc:
        logger.warning("Client brief generation failed for %s: %s", facts["name"], exc)
        return None
    return reply.text.strip() or None


@tool_definition(
    "generate_client_brief",
    "Generates a personalized brief for a specific client",
    properties={"client_name": {"type": "string", "description": "Name of the client"}},
    required=["client_name"],
)
def generate_client_brief(ctx: ToolContext, arguments: dict[str, Any]) -> dict[str, Any]:
    client = resolve_client(ctx, text_arg(arguments, "client_name"))
    now = datetime.now(UTC)

    cached = _cached_brief(client, now)
    if cached:
        return {"client_id": client["id"], "cached": True, "source": "cache", "brief": cached}

    transactions = ctx.store.active_transactions(ctx.user_id, client_id=client["id"])
    txn_ids = {t["id"] for t in transactions}
    deadlines = [d for d in ctx.store.open_deadlines(ctx.user_id) if d.get("transaction_id") in txn_ids]
    facts = gather_brief_facts(client, ctx.store.client_activity(client["id"]), transactions, deadlines)

    brief = write_client_brief(ctx.provider, facts)
    if brief is None:
        # Template briefs are not cached.
        return {
            "client_id": client["id"],
            "cached": False,
            "source": "template",
            "brief": compose_client_brief(facts),
        }

    ctx.store.update_client(
        client["id"], brief_content=brief, brief_generated_at=now.isoformat(),
    )
    return {"client_id": client["id"], "cached": False, "source": "model", "brief": brief}
