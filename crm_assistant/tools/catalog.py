"""The assistant's tool catalog."""

from __future__ import annotations

from crm_assistant.tools.briefings import (
    generate_client_brief,
    send_email_briefing,
    send_sms_briefing,
    set_briefing_schedule,
)
from crm_assistant.tools.crm import (
    add_client,
    create_transaction,
    delete_client,
    mark_deadline_complete,
    update_client_status,
)
from crm_assistant.tools.registry import ToolRegistry

ALL_TOOLS = [
    send_email_briefing,
    send_sms_briefing,
    create_transaction,
    add_client,
    update_client_status,
    delete_client,
    mark_deadline_complete,
    set_briefing_schedule,
    generate_client_brief,
]


def build_tool_registry() -> ToolRegistry:
    """Return a frozen registry holding every tool in ``ALL_TOOLS``."""
    return ToolRegistry(ALL_TOOLS).freeze()
