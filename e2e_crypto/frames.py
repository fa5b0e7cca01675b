"""
JSON wire frames exchanged through the relay.

    KeyFrame:  {"type": "public-key", "key": [..65 bytes..]}
    DataFrame: {"type": "message", "payload": {"iv": [..12 bytes..], "data": [...]}}

Byte strings are JSON arrays of integers, which is what browser peers send.
"""

import json
from dataclasses import dataclass
from typing import Union

from .cipher import EncryptedEnvelope
from .errors import FrameError


KEY_FRAME_TYPE = "public-key"
DATA_FRAME_TYPE = "message"


@dataclass(frozen=True)
class KeyFrame:
    key: bytes


@dataclass(frozen=True)
class DataFrame:
    envelope: EncryptedEnvelope


Frame = Union[KeyFrame, DataFrame]


def encode_frame(frame: Frame) -> str:
    """Serialize a frame to JSON text"""
    if isinstance(frame, KeyFrame):
        return json.dumps({"type": KEY_FRAME_TYPE, "key": list(frame.key)})
    if isinstance(frame, DataFrame):
        return json.dumps({"type": DATA_FRAME_TYPE, "payload": frame.envelope.to_dict()})
    raise TypeError(f"Not a frame: {frame!r}")


def _byte_array(value, name: str) -> bytes:
    if not isinstance(value, list):
        raise FrameError(f"'{name}' must be a byte array")
    for item in value:
        if type(item) is not int or not 0 <= item <= 255:
            raise FrameError(f"'{name}' must be a byte array")
    return bytes(value)


def decode_frame(data: Union[str, bytes]) -> Frame:
    """
    Parse a frame received from the transport.

    Raises:
        FrameError: If the frame is not valid JSON or not a known frame type
    """
    try:
        message = json.loads(data)
    except (ValueError, RecursionError) as e:
        raise FrameError(f"Frame is not valid JSON: {e}") from e

    if not isinstance(message, dict):
        raise FrameError("Frame must be a JSON object")

    frame_type = message.get("type")
    if frame_type == KEY_FRAME_TYPE:
        return KeyFrame(key=_byte_array(message.get("key"), "key"))

    if frame_type == DATA_FRAME_TYPE:
        payload = message.get("payload")
        if not isinstance(payload, dict):
            raise FrameError("'payload' must be an object")
        _byte_array(payload.get("iv"), "iv")
        _byte_array(payload.get("data"), "data")
        try:
            envelope = EncryptedEnvelope.from_dict(payload)
        except ValueError as e:
            raise FrameError(str(e)) from e
        return DataFrame(envelope=envelope)

    raise FrameError(f"Unknown frame type: {frame_type!r}")
