#!/usr/bin/env python3
"""
DerivDesk Trading Dashboard
Wire Codec

Encodes outgoing requests to the Deriv JSON protocol and classifies
incoming frames into envelopes.
"""

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union

from common.constants import STREAM_MSG_TYPES
from common.exceptions import ProtocolError


class EnvelopeKind(str, Enum):
    RESPONSE = "response"
    STREAM = "stream"
    ERROR = "error"


@dataclass
class Envelope:
    """A decoded inbound frame.

    A frame can be correlated and streamed at once: the first sample of a
    subscription echoes the `req_id` of the subscribe request and carries a
    `subscription.id`. `kind` records the dominant classification, while
    `req_id` and `subscription_id` are always populated when present.
    """
    kind: EnvelopeKind
    msg_type: Optional[str]
    data: Dict[str, Any]
    req_id: Optional[int] = None
    subscription_id: Optional[str] = None
    error: Optional[Dict[str, Any]] = None

    @property
    def is_stream(self) -> bool:
        return self.subscription_id is not None or (
            self.req_id is None and self.msg_type in STREAM_MSG_TYPES
        )

    @property
    def body(self) -> Any:
        """The payload keyed by the message type, e.g. `data["tick"]`."""
        return self.data.get(self.msg_type) if self.msg_type else None


def encode(request: Dict[str, Any], req_id: Optional[int] = None) -> str:
    """
    Serialize a request, injecting `req_id` when given.

    The caller's dict is not modified.
    """
    if not isinstance(request, dict) or not request:
        raise ValueError("A request must be a non-empty dict")
    payload = dict(request)
    if req_id is not None:
        payload["req_id"] = req_id
    return json.dumps(payload, separators=(",", ":"))


def decode(raw: Union[str, bytes]) -> Envelope:
    """
    Parse and classify one frame.

    Raises:
        ProtocolError: If the frame is not a JSON object
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError(f"Frame is not valid UTF-8 ({e})", raw)

    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"Invalid JSON frame ({e})", raw)

    if not isinstance(data, dict):
        raise ProtocolError("Frame is not a JSON object", raw)

    req_id = data.get("req_id")
    if req_id is not None and not isinstance(req_id, int):
        try:
            req_id = int(req_id)
        except (TypeError, ValueError):
            raise ProtocolError("Frame carries a non-integer req_id", raw)

    subscription = data.get("subscription")
    subscription_id = subscription.get("id") if isinstance(subscription, dict) else None
    msg_type = data.get("msg_type")
    error = data.get("error")

    if error:
        if not isinstance(error, dict):
            error = {"code": "UnknownError", "message": str(error)}
        kind = EnvelopeKind.ERROR
    elif subscription_id is not None or (req_id is None and msg_type in STREAM_MSG_TYPES):
        kind = EnvelopeKind.STREAM
    elif req_id is not None:
        kind = EnvelopeKind.RESPONSE
    else:
        raise ProtocolError("Frame has neither req_id nor a stream msg_type", raw)

    return Envelope(
        kind=kind,
        msg_type=msg_type,
        data=data,
        req_id=req_id,
        subscription_id=subscription_id,
        error=error,
    )
