# utils/serialization.py
"""
Wire framing for protocol messages:
 - encode_message / decode_message: Message <-> JSON bytes
 - write_frame / read_frame: 4-byte big-endian length prefix + body over asyncio streams

JSON keeps frames self-describing and never executes code on decode, which
matters between parties that do not trust each other.
"""
import asyncio
import json

from .. import constants
from ..errors import ConnectivityError, ProtocolSequenceError
from ..privacy.protocol_messages import Message

HEADER_BYTES = 4


def encode_message(msg: Message) -> bytes:
    return json.dumps(msg.to_dict(), sort_keys=True).encode("utf-8")


def decode_message(body: bytes) -> Message:
    try:
        d = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ProtocolSequenceError(f"undecodable frame: {e}") from e
    return Message.from_dict(d)


def _max_frame() -> int:
    return int(constants.DEFAULTS.get("MAX_FRAME_BYTES", 16 * 1024 * 1024))


async def write_frame(writer: asyncio.StreamWriter, body: bytes):
    if len(body) > _max_frame():
        raise ProtocolSequenceError(f"frame of {len(body)} bytes exceeds the limit")
    try:
        writer.write(len(body).to_bytes(HEADER_BYTES, "big") + body)
        await writer.drain()
    except (ConnectionError, OSError) as e:
        raise ConnectivityError(f"send failed: {e}") from e


async def read_frame(reader: asyncio.StreamReader) -> bytes:
    try:
        header = await reader.readexactly(HEADER_BYTES)
        length = int.from_bytes(header, "big")
        if length > _max_frame():
            raise ProtocolSequenceError(f"incoming frame of {length} bytes exceeds the limit")
        return await reader.readexactly(length)
    except asyncio.IncompleteReadError as e:
        raise ConnectivityError("connection closed by peer") from e
    except (ConnectionError, OSError) as e:
        raise ConnectivityError(f"receive failed: {e}") from e
