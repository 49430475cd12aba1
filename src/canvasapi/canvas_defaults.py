from __future__ import annotations

import uuid

from .canvas_contract import CanvasCreateRequestV1, SavePreferencesV1, iso_now

DEFAULT_MODEL = "gpt-4"
ENTRY_NODE_POSITION = {"x": 250, "y": 100}


def default_canvas_create_request(title: str = "New Canvas") -> CanvasCreateRequestV1:
    entry_node_id = f"node_{uuid.uuid4().hex[:12]}"

    return CanvasCreateRequestV1.model_validate(
        {
            "id": f"canvas_{uuid.uuid4().hex[:16]}",
            "title": title,
            "primaryNodeId": entry_node_id,
            "metaTags": [],
            "settings": {
                "description": "",
                "defaultModel": DEFAULT_MODEL,
            },
            "nodes": [
                {
                    "id": entry_node_id,
                    "type": "entry",
                    "primary": True,
                    "chatMessages": [],
                    "runningSummary": "",
                    "contextContract": "",
                    "model": DEFAULT_MODEL,
                    "createdAt": iso_now(),
                    "position": ENTRY_NODE_POSITION,
                }
            ],
            "edges": [],
        }
    )


def default_save_preferences() -> SavePreferencesV1:
    return SavePreferencesV1()
