"""
Generic template elements (rich cards) for comment private replies.

Automations of type `generic_template` store a JSON array of elements.
Elements without a title (or `text`) are dropped; buttons other than
well-formed `web_url` buttons are dropped; at most 10 elements with at
most 3 buttons each are sent.
"""

import json
import logging
from typing import Any, Optional

logger = logging.getLogger(__name__)

MAX_ELEMENTS = 10
MAX_BUTTONS = 3


def _non_empty_str(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def is_valid_element(value: Any) -> bool:
    """An element needs a title (or text) and, if present, a list of buttons."""
    if not isinstance(value, dict):
        return False
    title = value.get("title")
    if title is None:
        title = value.get("text")
    if not _non_empty_str(title):
        return False
    return value.get("buttons") is None or isinstance(value["buttons"], list)


def _normalize_button(button: Any) -> Optional[dict]:
    if not isinstance(button, dict) or button.get("type") != "web_url":
        return None
    url = button.get("url")
    title = button.get("title")
    if not isinstance(url, str) or not isinstance(title, str):
        return None
    return {"type": "web_url", "url": url, "title": title}


def normalize_element(element: dict) -> dict:
    """Keep only the fields the platform accepts, in their expected shapes."""
    title = element.get("title")
    normalized: dict[str, Any] = {
        "title": title if _non_empty_str(title) else element.get("text"),
    }

    if isinstance(element.get("subtitle"), str):
        normalized["subtitle"] = element["subtitle"]
    if isinstance(element.get("image_url"), str):
        normalized["image_url"] = element["image_url"]

    action = element.get("default_action")
    if isinstance(action, dict) and action.get("type") == "web_url" and isinstance(action.get("url"), str):
        normalized["default_action"] = {"type": "web_url", "url": action["url"]}

    if isinstance(element.get("buttons"), list):
        buttons = [b for b in map(_normalize_button, element["buttons"]) if b]
        normalized["buttons"] = buttons[:MAX_BUTTONS]

    return normalized


def parse_template_elements(raw: Optional[str]) -> list[dict]:
    """
    Parse and normalize a stored template payload.

    Returns:
        Sendable elements; empty when the payload is not a JSON array or
        holds no valid element.
    """
    if not raw:
        return []
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as e:
        logger.error(f"Invalid generic_template payload: {e}")
        return []

    if not isinstance(parsed, list):
        logger.error("Invalid generic_template payload: expected a JSON array")
        return []

    elements = [normalize_element(item) for item in parsed if is_valid_element(item)]
    return elements[:MAX_ELEMENTS]
