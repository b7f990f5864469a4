import json


def sse_event(event_type: str, data: dict) -> str:
    """One Server-Sent Event frame; the event type travels inside the payload."""
    payload = {"type": event_type, **data}
    return f"data: {json.dumps(payload, default=str)}\n\n"
