"""Shared fakes: an in-memory peer transport, capture devices and sockets."""

import asyncio
import json
import time
from typing import Any, Dict, List, Optional

import pytest
from aiortc import MediaStreamTrack

from duocall.rtc.media import Capture, MediaAcquisitionError
from duocall.rtc.webrtc_peer import TransportCallbacks


class FakeTrack(MediaStreamTrack):
    def __init__(self, kind: str = "video", label: str = ""):
        super().__init__()
        self.kind = kind
        self.label = label

    async def recv(self):
        await asyncio.sleep(0.01)
        return None


class FakeTransport:
    """Records what the negotiation engine asks of the platform."""

    supports_ice_restart = True

    def __init__(self, callbacks: Optional[TransportCallbacks] = None, *, supports_ice_restart: bool = True):
        self.callbacks = callbacks or TransportCallbacks()
        self.supports_ice_restart = supports_ice_restart
        self.local_tracks: List[Any] = []
        self.outgoing: Dict[str, Any] = {}
        self.replaced: List[tuple] = []
        self.local_description: Optional[dict] = None
        self.remote_description: Optional[dict] = None
        self.applied_candidates: List[dict] = []
        self.offers: List[dict] = []
        self.answers: List[dict] = []
        self.closed = False
        self.remote_gate: Optional[asyncio.Event] = None
        self.fail_remote = False

    def add_local_track(self, track) -> None:
        if track is None:
            return
        self.local_tracks.append(track)
        self.outgoing[track.kind] = track

    async def create_offer(self, *, ice_restart: bool = False) -> dict:
        desc = {"type": "offer", "sdp": f"v=0 offer-{len(self.offers) + 1}{' restart' if ice_restart else ''}"}
        self.offers.append(desc)
        self.local_description = desc
        return desc

    async def create_answer(self) -> dict:
        desc = {"type": "answer", "sdp": f"v=0 answer-{len(self.answers) + 1}"}
        self.answers.append(desc)
        self.local_description = desc
        return desc

    async def set_remote_description(self, description: dict) -> None:
        if self.remote_gate is not None:
            await self.remote_gate.wait()
        if self.fail_remote:
            raise ValueError("rejected description")
        self.remote_description = description
        if self.callbacks.on_remote_track:
            await self.callbacks.on_remote_track(FakeTrack("video", label="remote"))

    async def add_ice_candidate(self, candidate: dict) -> None:
        assert self.remote_description is not None, "candidate applied before remote description"
        self.applied_candidates.append(candidate)

    async def replace_outgoing_track(self, kind: str, track) -> None:
        if kind not in self.outgoing:
            raise LookupError(kind)
        self.outgoing[kind] = track
        self.replaced.append((kind, track))

    async def close(self) -> None:
        self.closed = True

    async def report_state(self, state: str) -> None:
        if self.callbacks.on_connection_state:
            await self.callbacks.on_connection_state(state)


class FakeMediaDevices:
    def __init__(self, *, fail: tuple = ()):
        self.fail = set(fail)
        self.opened: List[Capture] = []

    def open_camera(self) -> Capture:
        return self._open("camera", "video")

    def open_microphone(self) -> Capture:
        return self._open("microphone", "audio")

    def open_screen(self) -> Capture:
        return self._open("screen", "video")

    def _open(self, name: str, kind: str) -> Capture:
        if name in self.fail:
            raise MediaAcquisitionError(f"could not open {name}: permission denied")
        capture = Capture(track=FakeTrack(kind, label=name), label=f"fake:{name}")
        self.opened.append(capture)
        return capture


class FakeSocket:
    """Stands in for a server-side websocket; stores decoded outbound frames."""

    def __init__(self, block: bool = False):
        self.sent: List[dict] = []
        self._block = block

    async def send(self, raw: str) -> None:
        if self._block:
            await asyncio.Event().wait()
        self.sent.append(json.loads(raw))

    def types(self) -> List[str]:
        return [m["type"] for m in self.sent]

    def of_type(self, mtype: str) -> List[dict]:
        return [m for m in self.sent if m["type"] == mtype]


async def settle(delay: float = 0.02) -> None:
    await asyncio.sleep(delay)


async def wait_until(predicate, timeout: float = 3.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def devices() -> FakeMediaDevices:
    return FakeMediaDevices()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()
