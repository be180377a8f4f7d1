import json
from typing import Any


def parse_json_message(line: str) -> dict[str, Any] | None:
    """Parse a line as JSON message.

    Args:
        line: Raw line from stdin

    Returns:
        Parsed message dict, or None if invalid/should be ignored
    """
    line = line.strip()
    if not line:
        return None  # Ignore empty lines

    try:
        message = json.loads(line)
    except json.JSONDecodeError:
        return None
    if not isinstance(message, dict):
        return None
    return message


def serialize_message(message: dict[str, Any]) -> str:
    """Serialize a message to a single line of JSON.

    Raises:
        ValueError: If message cannot be serialized
    """
    try:
        return json.dumps(message, separators=(",", ":"), ensure_ascii=False)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Failed to serialize message to JSON: {e}") from e
