"""Conversions between the two historical chat message shapes.

Nodes carry ``chatMessages`` either as flat messages::

    {"id": "m1", "role": "user", "content": "hi", "timestamp": "..."}

or as legacy paired turns::

    {"id": "t1", "user": {"content": "hi", ...}, "assistant": {"content": "hello", ...}}

The normalized message table only stores the flat shape. A turn flattens into
up to two rows whose ids are ``<turn id>_u`` and ``<turn id>_a``.
"""

from __future__ import annotations

from typing import Any

MESSAGE_ROLES = ("user", "assistant")
TURN_ID_SUFFIXES = {"user": "_u", "assistant": "_a"}


def is_turn(message: dict[str, Any]) -> bool:
    return "role" not in message and ("user" in message or "assistant" in message)


def validate_message(message: Any) -> dict[str, Any]:
    if not isinstance(message, dict):
        raise ValueError("chat messages must be objects.")

    if is_turn(message):
        if not str(message.get("id") or "").strip():
            raise ValueError("chat turns require an id.")
        for role in MESSAGE_ROLES:
            part = message.get(role)
            if part is None:
                continue
            if not isinstance(part, dict) or not isinstance(part.get("content"), str):
                raise ValueError(f"chat turn '{role}' entry must be an object with string content.")
        return message

    role = message.get("role")
    if role not in MESSAGE_ROLES:
        raise ValueError(f"Invalid message role '{role}'. Use one of {', '.join(MESSAGE_ROLES)}.")
    if not isinstance(message.get("content"), str):
        raise ValueError("message content must be a string.")
    return message


def flatten_messages(node_id: str, messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    flat: list[dict[str, Any]] = []
    for index, message in enumerate(messages):
        if is_turn(message):
            turn_id = str(message["id"])
            for role in MESSAGE_ROLES:
                part = message.get(role)
                if part is None:
                    continue
                flat.append(
                    {
                        "id": f"{turn_id}{TURN_ID_SUFFIXES[role]}",
                        "role": role,
                        "content": part["content"],
                        "timestamp": part.get("timestamp"),
                    }
                )
            continue

        flat_message = dict(message)
        if not flat_message.get("id"):
            flat_message["id"] = f"{node_id}_m{index}"
        flat.append(flat_message)
    return flat


def hydrate_messages(
    node_id: str,
    embedded: list[dict[str, Any]],
    rows: list[dict[str, Any]],
) -> list[dict[str, Any]]:
    # Table rows win unless they describe exactly what the document embeds, in
    # which case the document's original shape is echoed back.
    if not rows:
        return embedded
    embedded_ids = [item["id"] for item in flatten_messages(node_id, embedded)]
    if embedded_ids == [row["id"] for row in rows]:
        return embedded
    return rows


def validate_messages(node_id: str, messages: list[Any]) -> list[dict[str, Any]]:
    """Validate each message and reject lists whose flattened ids collide.

    A legacy turn ``t1`` expands to ``t1_u``/``t1_a``, so it clashes with a flat
    message that already uses one of those ids.
    """
    validated = [validate_message(item) for item in messages]
    seen: set[str] = set()
    duplicates: list[str] = []
    for item in flatten_messages(node_id, validated):
        message_id = str(item["id"])
        if message_id in seen and message_id not in duplicates:
            duplicates.append(message_id)
        seen.add(message_id)
    if duplicates:
        raise ValueError(f"Node '{node_id}' has duplicate message ids: {', '.join(duplicates)}.")
    return validated


def count_messages(node_id: str, messages: list[dict[str, Any]]) -> int:
    return len(flatten_messages(node_id, messages))
