"""CRM tools: clients, transactions and deadlines.

Each handler returns a dict with a human-readable ``message`` the model
can relay, plus the ids it touched.  Business failures raise
:class:`ToolExecutionError`; when a multi-step write fails halfway the
error says which steps already happened.
"""

from __future__ import annotations

import logging
from typing import Any

from crm_assistant.services.store import DuplicateRecordError, PersistenceError
from crm_assistant.tools.executor import ToolExecutionError
from crm_assistant.tools.registry import ToolContext, tool_definition
from crm_assistant.tools.timeline import generate_timeline, parse_iso_date

logger = logging.getLogger(__name__)

LEAD_STATUSES = ("hot", "warm", "cold")
TRANSACTION_TYPES = ("buyer", "seller")


# ── Argument helpers ────────────────────────────────────────────────


def text_arg(arguments: dict[str, Any], key: str, *, required: bool = True) -> str | None:
    value = arguments.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise ToolExecutionError(f"{key} is required")
        return None
    if not isinstance(value, str):
        raise ToolExecutionError(f"{key} must be a string")
    return value.strip()


def choice_arg(arguments: dict[str, Any], key: str, choices: tuple[str, ...]) -> str:
    value = (text_arg(arguments, key) or "").lower()
    if value not in choices:
        raise ToolExecutionError(f"{key} must be one of {', '.join(choices)} (got {value!r})")
    return value


def flag_arg(arguments: dict[str, Any], key: str, default: bool) -> bool:
    value = arguments.get(key, default)
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "false"):
        return value.lower() == "true"
    raise ToolExecutionError(f"{key} must be true or false")


def resolve_client(ctx: ToolContext, name: str) -> dict[str, Any]:
    """Find one client by exact normalized name, else by a unique partial match."""
    client = ctx.store.get_client_by_name(ctx.user_id, name)
    if client is not None:
        return client

    candidates = ctx.store.search_clients(ctx.user_id, name, limit=5)
    if len(candidates) == 1:
        return candidates[0]
    if not candidates:
        raise ToolExecutionError(f'Client "{name}" not found')
    names = ", ".join(c["name"] for c in candidates)
    raise ToolExecutionError(f'"{name}" matches several clients ({names}); please be more specific')


# ── Clients ─────────────────────────────────────────────────────────


@tool_definition(
    "add_client",
    "Adds a new client to the CRM",
    properties={
        "name": {"type": "string", "description": "Client's full name"},
        "status": {
            "type": "string",
            "enum": list(LEAD_STATUSES),
            "description": "Client's lead status",
        },
        "email": {"type": "string", "description": "Client's email address"},
        "phone": {"type": "string", "description": "Client's phone number"},
        "notes": {"type": "string", "description": "Additional notes about the client"},
    },
    required=["name", "status"],
)
def add_client(ctx: ToolContext, arguments: dict[str, Any]) -> dict[str, Any]:
    name = text_arg(arguments, "name")
    status = choice_arg(arguments, "status", LEAD_STATUSES)
    try:
        client = ctx.store.create_client(
            ctx.user_id,
            name,
            status=status,
            email=text_arg(arguments, "email", required=False),
            phone=text_arg(arguments, "phone", required=False),
            notes=text_arg(arguments, "notes", required=False),
        )
    except DuplicateRecordError:
        raise ToolExecutionError(f'A client named "{name}" already exists') from None
    return {
        "client_id": client["id"],
        "message": f'Client "{client["name"]}" added as a {status} lead.',
    }


@tool_definition(
    "update_client_status",
    "Updates a client's lead status (hot/warm/cold)",
    properties={
        "client_name": {"type": "string", "description": "Name of the client to update"},
        "new_status": {
            "type": "string",
            "enum": list(LEAD_STATUSES),
            "description": "New status for the client",
        },
    },
    required=["client_name", "new_status"],
)
def update_client_status(ctx: ToolContext, arguments: dict[str, Any]) -> dict[str, Any]:
    status = choice_arg(arguments, "new_status", LEAD_STATUSES)
    client = resolve_client(ctx, text_arg(arguments, "client_name"))
    ctx.store.update_client(client["id"], status=status)
    return {
        "client_id": client["id"],
        "message": f'Updated "{client["name"]}" to {status} status.',
    }


@tool_definition(
    "delete_client",
    "Deletes a client from the CRM",
    properties={
        "client_name": {"type": "string", "description": "Name of the client to delete"},
    },
    required=["client_name"],
)
def delete_client(ctx: ToolContext, arguments: dict[str, Any]) -> dict[str, Any]:
    client = resolve_client(ctx, text_arg(arguments, "client_name"))
    ctx.store.delete_client(client["id"])
    return {"client_id": client["id"], "message": f'Client "{client["name"]}" has been deleted.'}


# ── Transactions ────────────────────────────────────────────────────


@tool_definition(
    "create_transaction",
    "Creates a new real estate transaction for a client, with an automatic "
    "milestone timeline. The client is created if they don't exist yet.",
    properties={
        "client_name": {"type": "string", "description": "Name of the client for this transaction"},
        "property_address": {"type": "string", "description": "Full address of the property"},
        "transaction_type": {
            "type": "string",
            "enum": list(TRANSACTION_TYPES),
            "description": "Whether this is a buyer or seller transaction",
        },
        "contract_date": {
            "type": "string",
            "description": "Contract date in YYYY-MM-DD format (defaults to today)",
        },
        "closing_date": {
            "type": "string",
            "description": "Expected closing date in YYYY-MM-DD format",
        },
    },
    required=["client_name", "property_address", "transaction_type", "closing_date"],
)
def create_transaction(ctx: ToolContext, arguments: dict[str, Any]) -> dict[str, Any]:
    client_name = text_arg(arguments, "client_name")
    address = text_arg(arguments, "property_address")
    txn_type = choice_arg(arguments, "transaction_type", TRANSACTION_TYPES)
    try:
        closing = parse_iso_date(text_arg(arguments, "closing_date"), "closing_date")
        raw_contract = text_arg(arguments, "contract_date", required=False)
        contract = parse_iso_date(raw_contract, "contract_date") if raw_contract else ctx.today
        timeline = generate_timeline(contract, closing)
    except ValueError as exc:
        raise ToolExecutionError(str(exc)) from None

    client, created = ctx.store.get_or_create_client(ctx.user_id, client_name)
    client_note = f'new client "{client["name"]}"' if created else f'client "{client["name"]}"'

    try:
        txn = ctx.store.create_transaction(
            ctx.user_id,
            client["id"],
            property_address=address,
            transaction_type=txn_type,
            contract_date=contract.isoformat(),
            closing_date=closing.isoformat(),
        )
    except PersistenceError as exc:
        done = f"Created {client_note}, but " if created else ""
        raise ToolExecutionError(f"{done}the transaction could not be saved: {exc}") from exc

    try:
        ctx.store.add_timeline_items(txn["id"], timeline)
    except PersistenceError as exc:
        logger.error("Timeline insert failed for transaction %s: %s", txn["id"], exc)
        raise ToolExecutionError(
            f"Transaction {txn['id']} for {client_note} at {address} was created, "
            f"but its timeline could not be saved: {exc}"
        ) from exc

    return {
        "transaction_id": txn["id"],
        "client_id": client["id"],
        "client_created": created,
        "timeline": [{"title": i["title"], "due_date": i["due_date"]} for i in timeline],
        "message": (
            f"Transaction created for {client['name']} at {address}. "
            f"Timeline with {len(timeline)} milestones has been set up."
        ),
    }


# ── Deadlines ───────────────────────────────────────────────────────


@tool_definition(
    "mark_deadline_complete",
    "Marks a deadline/task as completed (or reopens it with completed=false)",
    properties={
        "deadline_title": {
            "type": "string",
            "description": "The title (or part of it) of the deadline to update",
        },
        "completed": {
            "type": "boolean",
            "description": "Whether the deadline is completed (true, default) or not (false)",
        },
    },
    required=["deadline_title"],
)
def mark_deadline_complete(ctx: ToolContext, arguments: dict[str, Any]) -> dict[str, Any]:
    title = text_arg(arguments, "deadline_title")
    completed = flag_arg(arguments, "completed", True)
    matches = ctx.store.find_deadlines(ctx.user_id, title, limit=1)
    if not matches:
        raise ToolExecutionError(f'Deadline "{title}" not found')

    item = matches[0]
    ctx.store.update_timeline_item(item["id"], completed=completed)
    state = "complete" if completed else "not complete"
    where = f" for {item['property_address']}" if item.get("property_address") else ""
    return {
        "deadline_id": item["id"],
        "completed": completed,
        "message": f'Marked "{item["title"]}"{where} as {state}.',
    }
