"""JSON schemas for slot-based generation.

Each mode asks the model for three short slots that are assembled into the
final description, which keeps small models on track.

    result = engine.generate(prompt, GenerationRequest(
        mode="levelIntro", json_schema=JSON_SCHEMAS["levelIntro"]))
    text = assemble_level_intro(result["parsed"])
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

JSON_SCHEMAS: dict[str, dict[str, Any]] = {
    # Assembled as "room. threat. oddity."
    "levelIntro": {
        "type": "object",
        "properties": {
            "room": {"type": "string"},
            "threat": {"type": "string"},
            "oddity": {"type": "string"},
        },
        "required": ["room", "threat", "oddity"],
    },
    # Assembled as "placement. effect."; title echoes the artifact name
    "artifact": {
        "type": "object",
        "properties": {
            "title": {"type": "string"},
            "placement": {"type": "string"},
            "effect": {"type": "string"},
        },
        "required": ["title", "placement", "effect"],
    },
}

_TRAILING_PUNCTUATION = re.compile(r"[.!?,;:\s]+$")


def clean_slot(value: Any) -> str:
    """Strip trailing punctuation and whitespace so slots join without double periods."""
    if not value:
        return ""
    return _TRAILING_PUNCTUATION.sub("", str(value)).strip()


def assemble_level_intro(slots: Mapping[str, Any]) -> str:
    room = clean_slot(slots.get("room"))
    threat = clean_slot(slots.get("threat"))
    oddity = clean_slot(slots.get("oddity"))
    return f"{room}. {threat}. {oddity}."


def assemble_artifact(slots: Mapping[str, Any]) -> str:
    placement = clean_slot(slots.get("placement"))
    effect = clean_slot(slots.get("effect"))
    return f"{placement}. {effect}."
