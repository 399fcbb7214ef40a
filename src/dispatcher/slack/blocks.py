"""Block Kit message composition for the dispatcher.

Standardized message formats for:
- Work-order task cards
- Look-ahead previews
- Completion confirmations
"""

from __future__ import annotations

from typing import Any

from dispatcher.documents.work_order import WorkOrder

COMPLETE_ACTION_ID = "complete_task"
METADATA_EVENT_TYPE = "work_order_posted"


def section(text: str, accessory: dict[str, Any] | None = None) -> dict[str, Any]:
    """Create a section block."""
    block: dict[str, Any] = {
        "type": "section",
        "text": {
            "type": "mrkdwn",
            "text": text,
        },
    }
    if accessory:
        block["accessory"] = accessory
    return block


def context(elements: list[dict[str, Any]]) -> dict[str, Any]:
    """Create a context block."""
    return {
        "type": "context",
        "elements": elements,
    }


def actions(elements: list[dict[str, Any]]) -> dict[str, Any]:
    """Create an actions block."""
    return {
        "type": "actions",
        "elements": elements,
    }


def mrkdwn(text: str) -> dict[str, Any]:
    """Create mrkdwn text object."""
    return {
        "type": "mrkdwn",
        "text": text,
    }


def complete_checkbox(activity_id: str) -> dict[str, Any]:
    return {
        "type": "checkboxes",
        "action_id": COMPLETE_ACTION_ID,
        "options": [
            {
                "text": mrkdwn("Mark as complete"),
                "value": f"task_{activity_id}",
            },
        ],
    }


def activity_marker(activity_id: Any) -> str:
    """Tag placed on every post so it can be found again without a handle."""
    return f"wo:{activity_id}"


def task_card_text(order: WorkOrder) -> str:
    return (
        f"📌 *New Task*\n• *{order.subject}*"
        f"\n🗓️ Due: {order.due or 'No due date'}"
        f"\n👷 Crew: {order.crew or 'Unassigned'}"
        f"\n📜 Note: {order.note or '_No note provided_'}"
        f"\n🏷️ Deal ID: {order.deal_id or 'N/A'} - *{order.deal_title or 'N/A'}*"
        f"\n📦 Type of Service: {order.service or 'N/A'}"
        f"\n📍 Location: {order.location or 'N/A'}"
    )


def task_card_blocks(order: WorkOrder) -> list[dict[str, Any]]:
    return [
        section(task_card_text(order)),
        actions([complete_checkbox(order.activity_id)]),
        context([mrkdwn(activity_marker(order.activity_id))]),
    ]


def task_card_metadata(order: WorkOrder) -> dict[str, Any]:
    return {
        "event_type": METADATA_EVENT_TYPE,
        "event_payload": {"activity_id": order.activity_id, "deal_id": order.deal_id},
    }


def message_mentions_activity(message: dict[str, Any], activity_id: Any) -> bool:
    """True when a history message was posted for ``activity_id``."""
    payload = (message.get("metadata") or {}).get("event_payload") or {}
    if str(payload.get("activity_id", "")) == str(activity_id):
        return True
    marker = activity_marker(activity_id)
    text = message.get("text") or ""
    if _has_marker(text, marker):
        return True
    for block in message.get("blocks") or []:
        for element in block.get("elements") or []:
            if isinstance(element, dict) and _has_marker(element.get("text") or "", marker):
                return True
    return False


def _has_marker(text: str, marker: str) -> bool:
    # Exact token match so wo:12 does not match wo:123.
    return any(token.strip("`*_()[]") == marker for token in text.split())


def lookahead_blocks(date_label: str, orders: list[WorkOrder]) -> list[dict[str, Any]]:
    lines = [
        f"• *{o.subject}* ({o.due}) - {o.deal_title or 'No deal'}" for o in orders
    ]
    return [
        section(f"🔭 *Tomorrow's work orders* ({date_label})"),
        section("\n".join(lines) or "_Nothing scheduled._"),
    ]


def completion_text(activity_id: str, deal_id: str, ok: bool) -> str:
    if ok:
        suffix = f" (deal {deal_id})" if deal_id else ""
        return f"✅ Task *{activity_id}* marked complete in Pipedrive{suffix}."
    return f"⚠️ Tried to complete task *{activity_id}* but Pipedrive didn't confirm success."
