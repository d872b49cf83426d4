"""aiortc-backed peer transport for one call."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

from aiortc import (
    MediaStreamTrack,
    RTCIceCandidate,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.rtcconfiguration import RTCConfiguration
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from ..net.protocol import IceCandidateDict, SessionDescriptionDict


logger = logging.getLogger(__name__)


AsyncPeerCallback = Callable[..., Awaitable[None]]


def build_rtc_configuration(stun_urls: Iterable[str]) -> RTCConfiguration:
    servers = [RTCIceServer(urls=url) for url in stun_urls if url]
    return RTCConfiguration(iceServers=servers)


def _candidate_to_json(candidate: RTCIceCandidate) -> Dict[str, Any]:
    return {
        "candidate": candidate_to_sdp(candidate),
        "sdpMid": getattr(candidate, "sdpMid", None),
        "sdpMLineIndex": getattr(candidate, "sdpMLineIndex", None),
    }


def _candidate_from_json(obj: Dict[str, Any]) -> RTCIceCandidate:
    cand_sdp = obj.get("candidate")
    if not isinstance(cand_sdp, str) or not cand_sdp:
        raise ValueError("missing candidate")
    if cand_sdp.startswith("candidate:"):
        cand_sdp = cand_sdp[len("candidate:"):]
    cand = candidate_from_sdp(cand_sdp)
    cand.sdpMid = obj.get("sdpMid")
    cand.sdpMLineIndex = obj.get("sdpMLineIndex")
    return cand


def _description_to_json(desc: RTCSessionDescription) -> SessionDescriptionDict:
    return {"type": desc.type, "sdp": desc.sdp}


@dataclass
class TransportCallbacks:
    on_local_ice: Optional[AsyncPeerCallback] = None  # (candidate: dict)
    on_connection_state: Optional[AsyncPeerCallback] = None  # (state: str)
    on_remote_track: Optional[AsyncPeerCallback] = None  # (track: MediaStreamTrack)
    on_remote_track_ended: Optional[AsyncPeerCallback] = None  # (track: MediaStreamTrack)


class AiortcTransport:
    """PeerTransport over an ``RTCPeerConnection``.

    aiortc cannot restart ICE on a live connection, so connectivity failure
    makes the call fall back to a full rejoin.
    """

    supports_ice_restart = False

    def __init__(
        self,
        rtc_config: Optional[RTCConfiguration] = None,
        callbacks: Optional[TransportCallbacks] = None,
    ):
        self._callbacks = callbacks or TransportCallbacks()
        self._pc = RTCPeerConnection(configuration=rtc_config)
        self._closed = False

        @self._pc.on("icecandidate")
        async def on_icecandidate(event) -> None:
            if event is None or getattr(event, "candidate", None) is None:
                return
            if self._callbacks.on_local_ice:
                await self._callbacks.on_local_ice(_candidate_to_json(event.candidate))

        @self._pc.on("connectionstatechange")
        async def on_connectionstatechange() -> None:
            state = self._pc.connectionState
            logger.info("pc connectionState=%s", state)
            if self._callbacks.on_connection_state:
                await self._callbacks.on_connection_state(state)

        @self._pc.on("track")
        async def on_track(track: MediaStreamTrack) -> None:
            logger.info("pc remote track kind=%s", track.kind)

            @track.on("ended")
            async def on_ended() -> None:
                logger.info("pc remote track ended kind=%s", track.kind)
                if self._callbacks.on_remote_track_ended:
                    await self._callbacks.on_remote_track_ended(track)

            if self._callbacks.on_remote_track:
                await self._callbacks.on_remote_track(track)

    @property
    def connection_state(self) -> str:
        return self._pc.connectionState

    def add_local_track(self, track: Optional[MediaStreamTrack]) -> None:
        if track is None:
            return
        self._pc.addTrack(track)

    async def create_offer(self, *, ice_restart: bool = False) -> SessionDescriptionDict:
        offer = await self._pc.createOffer()
        await self._pc.setLocalDescription(offer)
        assert self._pc.localDescription is not None
        return _description_to_json(self._pc.localDescription)

    async def create_answer(self) -> SessionDescriptionDict:
        answer = await self._pc.createAnswer()
        await self._pc.setLocalDescription(answer)
        assert self._pc.localDescription is not None
        return _description_to_json(self._pc.localDescription)

    async def set_remote_description(self, description: SessionDescriptionDict) -> None:
        await self._pc.setRemoteDescription(RTCSessionDescription(sdp=description["sdp"], type=description["type"]))

    async def add_ice_candidate(self, candidate: IceCandidateDict) -> None:
        await self._pc.addIceCandidate(_candidate_from_json(dict(candidate)))

    async def replace_outgoing_track(self, kind: str, track: Optional[MediaStreamTrack]) -> None:
        for sender in self._pc.getSenders():
            if sender.kind == kind:
                sender.replaceTrack(track)
                logger.debug("pc replaced outgoing %s track", kind)
                return
        raise LookupError(f"no outgoing {kind} sender")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._pc.close()
