"""
Shared fixtures for the SketchLab test suite.
"""

import asyncio
import json
import tempfile

import pytest


class FakeChannel:
    """In-memory stand-in for a WebSocket connection.

    With stall set, sends block until release() is called, like a peer
    that stopped reading.
    """

    def __init__(self, fail: bool = False, stall: bool = False) -> None:
        self.sent = []
        self.fail = fail
        self.stall = stall
        self.stalled_sends = 0
        self._closed = False
        self._released = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed

    async def send_str(self, data: str) -> None:
        await self._wait_if_stalled()
        if self.fail or self._closed:
            raise ConnectionResetError("channel is gone")
        self.sent.append(data)

    async def send_bytes(self, data: bytes) -> None:
        await self._wait_if_stalled()
        if self.fail or self._closed:
            raise ConnectionResetError("channel is gone")
        self.sent.append(data)

    async def _wait_if_stalled(self) -> None:
        if self.stall:
            self.stalled_sends += 1
            await self._released.wait()

    def release(self) -> None:
        self.stall = False
        self._released.set()

    async def close(self) -> None:
        self._closed = True

    def frames(self, type_=None):
        """Decoded JSON frames, optionally filtered by type."""
        decoded = []
        for item in self.sent:
            if not isinstance(item, str):
                continue
            try:
                frame = json.loads(item)
            except json.JSONDecodeError:
                continue
            if isinstance(frame, dict) and (type_ is None or frame.get("type") == type_):
                decoded.append(frame)
        return decoded


@pytest.fixture
def make_channel():
    """Factory for fake channels."""
    return FakeChannel


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir
