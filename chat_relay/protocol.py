import json
import time
from typing import Any, Dict, Optional

from .event_types import BROADCAST_TARGET, SERVER_ID


def make_envelope(msg_type: str, payload: Any, to_id: str = BROADCAST_TARGET, from_id: str = SERVER_ID, ts: Optional[int] = None) -> str:
    return json.dumps({
        "type": msg_type,
        "from": from_id,
        "to": to_id,
        "ts": int(time.time() * 1000) if ts is None else ts,
        "payload": payload,
    })


def parse_envelope(raw: str | bytes) -> Dict[str, Any] | None:
    """Parse a received frame; anything that is not a JSON object yields None."""
    try:
        frame = json.loads(raw)
    except (ValueError, RecursionError):
        # deeply nested frames raise RecursionError
        return None
    if not isinstance(frame, dict) or not isinstance(frame.get("type"), str):
        return None
    return frame
