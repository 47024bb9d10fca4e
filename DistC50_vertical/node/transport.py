"""
transport.py

Framed duplex connections over asyncio streams and the registry of live
connections a node owns.

- Connection.send is serialised by a per-connection lock, so two coroutines can
  never interleave frames on the same socket.
- ConnectionRegistry guards insert/remove/lookup with an asyncio.Lock; accept
  handlers and the orchestration logic both touch it.
- connect_with_retries dials with a fixed retry budget and delay, then raises
  ConnectivityError.
"""

import asyncio
from typing import Dict, List, Optional

from .. import constants, logger
from ..errors import ConnectivityError
from ..privacy.protocol_messages import Message
from ..utils.serialization import decode_message, encode_message, read_frame, write_frame


def _timeout() -> float:
    return float(constants.DEFAULTS.get("SOCKET_TIMEOUT", 30.0))


class Connection:
    def __init__(self, peer_id: Optional[str], reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self.peer_id = peer_id
        self.reader = reader
        self.writer = writer
        self._send_lock = asyncio.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, msg: Message):
        if self._closed:
            raise ConnectivityError(f"connection to {self.peer_id} is closed")
        body = encode_message(msg)
        async with self._send_lock:
            try:
                await asyncio.wait_for(write_frame(self.writer, body), _timeout())
            except asyncio.TimeoutError as e:
                raise ConnectivityError(f"send to {self.peer_id} timed out") from e

    async def receive(self, timeout: Optional[float] = None) -> Message:
        """Next message; timeout=None blocks until a frame or connection loss."""
        if timeout is None:
            body = await read_frame(self.reader)
        else:
            try:
                body = await asyncio.wait_for(read_frame(self.reader), timeout)
            except asyncio.TimeoutError as e:
                raise ConnectivityError(f"no message from {self.peer_id} within {timeout}s") from e
        return decode_message(body)

    async def close(self):
        if self._closed:
            return
        self._closed = True
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionError, OSError):
            # peer already gone
            pass


class ConnectionRegistry:
    def __init__(self):
        self._conns: Dict[str, Connection] = {}
        self._lock = asyncio.Lock()

    async def add(self, peer_id: str, conn: Connection):
        async with self._lock:
            old = self._conns.get(peer_id)
            self._conns[peer_id] = conn
        if old is not None and old is not conn:
            await old.close()

    async def remove(self, peer_id: str, conn: Optional[Connection] = None) -> Optional[Connection]:
        """Drop peer_id; with conn, only if that exact connection is still registered."""
        async with self._lock:
            current = self._conns.get(peer_id)
            if current is None or (conn is not None and current is not conn):
                return None
            return self._conns.pop(peer_id)

    async def get(self, peer_id: str) -> Optional[Connection]:
        async with self._lock:
            return self._conns.get(peer_id)

    async def ids(self) -> List[str]:
        async with self._lock:
            return list(self._conns.keys())

    async def close_all(self):
        async with self._lock:
            conns = list(self._conns.values())
            self._conns.clear()
        for c in conns:
            await c.close()


async def connect_with_retries(host: str, port: int, peer_id: str,
                               retries: Optional[int] = None, delay: Optional[float] = None) -> Connection:
    if retries is None:
        retries = int(constants.DEFAULTS.get("MAX_CONNECTION_RETRIES", 3))
    if delay is None:
        delay = float(constants.DEFAULTS.get("CONNECTION_RETRY_DELAY", 1.0))
    last_exc: Optional[BaseException] = None
    for attempt in range(1, max(1, retries) + 1):
        try:
            reader, writer = await asyncio.wait_for(asyncio.open_connection(host, port), _timeout())
            logger.secure_log("debug", "Connected", peer=peer_id, host=host, port=port, attempt=attempt)
            return Connection(peer_id, reader, writer)
        except (OSError, asyncio.TimeoutError) as exc:
            last_exc = exc
            logger.secure_log("warning", "Connect failed", peer=peer_id, host=host, port=port,
                              attempt=attempt, error=str(exc))
            if attempt < retries:
                await asyncio.sleep(delay)
    raise ConnectivityError(f"could not reach {peer_id} at {host}:{port} after {retries} attempts") from last_exc
