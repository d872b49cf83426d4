"""One client's side of a 1:1 call."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from aiortc.rtcconfiguration import RTCConfiguration

from ..net import protocol
from ..net.signaling_client import SignalingCallbacks, SignalingClient
from .media import MediaCallbacks, MediaTrackController
from .negotiation import NegotiationCallbacks, NegotiationEngine, NegotiationState, PeerTransport
from .presence import PresenceCallbacks, PresenceChannel
from .webrtc_peer import AiortcTransport, TransportCallbacks


logger = logging.getLogger(__name__)


AsyncCallback = Callable[..., Awaitable[None]]
TransportFactory = Callable[[TransportCallbacks], PeerTransport]


@dataclass
class CallCallbacks:
    on_log: Optional[AsyncCallback] = None
    on_negotiation_state: Optional[AsyncCallback] = None  # (state: NegotiationState)
    on_remote_media: Optional[AsyncCallback] = None  # (tracks: dict[str, MediaStreamTrack])
    on_remote_name: Optional[AsyncCallback] = None  # (name: str | None)
    on_preview: Optional[AsyncCallback] = None  # (track: MediaStreamTrack | None)
    on_media_error: Optional[AsyncCallback] = None  # (errors: list[str])
    on_closed: Optional[AsyncCallback] = None  # () signaling lost, call already left


class CallSession:
    """Wires signaling, negotiation, local media and presence for one call.

    The negotiation engine and its transport are per peer: when the peer
    leaves they are replaced by fresh ones, while local captures stay open
    until this client leaves.
    """

    def __init__(
        self,
        signaling: SignalingClient,
        devices: Any,
        *,
        name: str = "",
        rtc_config: Optional[RTCConfiguration] = None,
        transport_factory: Optional[TransportFactory] = None,
        reaction_seconds: float = 3.0,
        callbacks: Optional[CallCallbacks] = None,
        presence_callbacks: Optional[PresenceCallbacks] = None,
    ):
        self.signaling = signaling
        self.name = name
        self.room: Optional[str] = None
        self._callbacks = callbacks or CallCallbacks()
        self._rtc_config = rtc_config
        self._transport_factory = transport_factory or self._aiortc_transport

        self.media = MediaTrackController(devices, callbacks=MediaCallbacks(on_preview=self._on_preview))
        self.presence = PresenceChannel(
            self._send_presence,
            reaction_seconds=reaction_seconds,
            callbacks=presence_callbacks,
        )
        self.engine: Optional[NegotiationEngine] = None

        self.remote_id: Optional[str] = None
        self.remote_name: Optional[str] = None
        self.remote_tracks: Dict[str, Any] = {}
        self._waiting_peer: Optional[Tuple[str, str]] = None
        self._previous_id: Optional[str] = None

        signaling.callbacks = SignalingCallbacks(
            on_log=self._log,
            on_room_users=self._on_room_users,
            on_user_connected=self._on_user_connected,
            on_user_disconnected=self._on_user_disconnected,
            on_offer=self._on_offer,
            on_answer=self._on_answer,
            on_ice=self._on_ice,
            on_chat=self.presence.handle_chat,
            on_reaction=self.presence.handle_reaction,
            on_hand=self.presence.handle_hand,
            on_closed=self._on_signaling_closed,
            on_error=self._on_signaling_error,
        )

    @property
    def state(self) -> NegotiationState:
        return self.engine.state if self.engine else NegotiationState.IDLE

    async def join(self, room: str) -> bool:
        room = room.strip()
        if not room:
            raise ValueError("room id must not be blank")
        if self.room is not None:
            logger.debug("call join ignored, already in room=%s", self.room)
            return True

        if not await self.signaling.connect():
            return False
        if await self.signaling.wait_welcome() is None:
            await self.signaling.disconnect()
            return False

        errors = self.media.acquire()
        if errors and self._callbacks.on_media_error:
            await self._callbacks.on_media_error(errors)

        self.room = room
        self._new_session()
        logger.info("call join room=%s name=%s", room, self.name)
        await self.signaling.join(room, self.name)
        return True

    async def leave(self) -> None:
        """Hang up. Captures are released before anything is awaited."""
        if self.room is None and self.engine is None:
            return
        logger.info("call leave room=%s", self.room)
        self.room = None
        self.media.release()
        self._waiting_peer = None
        self._previous_id = None
        self.presence.clear()
        engine = self.engine
        self.engine = None
        await self._clear_remote()
        if engine is not None:
            await engine.close()
        await self.signaling.disconnect()

    async def rejoin(self) -> None:
        """Full teardown and join of the same room, keeping local media."""
        room = self.room
        if room is None:
            return
        logger.info("call rejoin room=%s", room)
        self._waiting_peer = None
        # The old connection may still be listed in the next room-users.
        self._previous_id = self.signaling.participant_id
        engine = self.engine
        self.engine = None
        self.presence.clear_remote()
        await self._clear_remote()
        if engine is not None:
            await engine.close()
        await self.signaling.disconnect()

        if not await self.signaling.connect() or await self.signaling.wait_welcome() is None:
            logger.warning("call rejoin failed room=%s", room)
            await self.leave()
            return
        self._new_session()
        await self.signaling.join(room, self.name)

    def toggle_mic(self) -> bool:
        return self.media.toggle_mic()

    def toggle_camera(self) -> bool:
        return self.media.toggle_camera()

    async def toggle_screen_share(self) -> bool:
        """Start or stop sharing; MediaAcquisitionError reaches the caller."""
        if self.media.sharing:
            await self.media.stop_share()
            return False
        return await self.media.start_share()

    async def send_chat(self, text: str) -> None:
        await self.presence.send_chat(text)

    async def send_reaction(self, emoji: str) -> None:
        await self.presence.send_reaction(emoji)

    async def toggle_hand(self) -> bool:
        return await self.presence.toggle_hand()

    def _aiortc_transport(self, callbacks: TransportCallbacks) -> PeerTransport:
        return AiortcTransport(rtc_config=self._rtc_config, callbacks=callbacks)

    def _new_session(self) -> NegotiationEngine:
        # Events from a replaced transport/engine are dropped by the identity check.
        engine: Optional[NegotiationEngine] = None

        def current() -> bool:
            return engine is not None and engine is self.engine

        async def on_local_ice(candidate: dict) -> None:
            if current() and self.room:
                await self.signaling.send_ice(self.room, candidate)

        async def on_connection_state(state: str) -> None:
            if current():
                await engine.handle_connection_state(state)

        async def on_remote_track(track: Any) -> None:
            if current():
                self.remote_tracks[track.kind] = track
                await self._notify_remote_media()

        async def on_remote_track_ended(track: Any) -> None:
            if current() and self.remote_tracks.get(track.kind) is track:
                del self.remote_tracks[track.kind]
                await self._notify_remote_media()

        transport = self._transport_factory(
            TransportCallbacks(
                on_local_ice=on_local_ice,
                on_connection_state=on_connection_state,
                on_remote_track=on_remote_track,
                on_remote_track_ended=on_remote_track_ended,
            )
        )
        transport.add_local_track(self.media.audio_track)
        transport.add_local_track(self.media.outgoing_video)

        engine = NegotiationEngine(
            transport,
            NegotiationCallbacks(
                send_offer=self._send_offer,
                send_answer=self._send_answer,
                on_state=self._on_negotiation_state,
                on_rejoin=self.rejoin,
            ),
        )
        self.engine = engine
        self.media.attach(transport)
        return engine

    async def _send_offer(self, description: protocol.SessionDescriptionDict) -> None:
        if self.room:
            await self.signaling.send_offer(self.room, description, self.name)

    async def _send_answer(self, description: protocol.SessionDescriptionDict) -> None:
        if self.room:
            await self.signaling.send_answer(self.room, description, self.name)

    async def _send_presence(self, payload: Dict[str, Any]) -> None:
        if self.room is None:
            logger.debug("call presence dropped, not in a room type=%s", payload.get("type"))
            return
        await self.signaling.send(payload)

    async def _on_room_users(self, room: str, users: list) -> None:
        logger.info("call room-users room=%s count=%s", room, len(users))
        for user in users:
            pid = str(user.get("participant_id", ""))
            if pid and pid not in (self.signaling.participant_id, self._previous_id):
                self.remote_id = pid
                await self._set_remote_name(user.get("name"))
                break

    async def _on_user_connected(self, participant_id: str, name: str) -> None:
        if self.engine is None:
            return
        if self.engine.state is not NegotiationState.IDLE:
            # Busy with the current peer. A rejoining peer's new connection can
            # be announced before its old one leaves; call it once that happens.
            logger.info("call peer queued participant_id=%s state=%s", participant_id, self.engine.state.value)
            self._waiting_peer = (participant_id, name)
            return
        self.remote_id = participant_id
        await self._set_remote_name(name)
        await self.engine.handle_peer_joined(participant_id)

    async def _on_user_disconnected(self, participant_id: str) -> None:
        if self._waiting_peer and self._waiting_peer[0] == participant_id:
            self._waiting_peer = None
            return
        if participant_id and participant_id == self._previous_id:
            return
        if self.remote_id and participant_id and participant_id != self.remote_id:
            logger.debug("call user-disconnected ignored participant_id=%s", participant_id)
            return
        logger.info("call peer left participant_id=%s", participant_id)
        self.presence.clear_remote()
        await self._clear_remote()
        engine = self.engine
        self.engine = None
        if engine is not None:
            await engine.close()
        if self.room is not None:
            # Ready to call whoever joins next.
            self._new_session()
            waiting, self._waiting_peer = self._waiting_peer, None
            if waiting is not None:
                await self._on_user_connected(*waiting)

    async def _on_offer(self, msg: protocol.Offer) -> None:
        if msg.sender:
            self.remote_id = msg.sender
        if msg.name:
            await self._set_remote_name(msg.name)
        if self.engine:
            await self.engine.handle_offer(msg.description)

    async def _on_answer(self, msg: protocol.Answer) -> None:
        if msg.name:
            await self._set_remote_name(msg.name)
        if self.engine:
            await self.engine.handle_answer(msg.description)

    async def _on_ice(self, msg: protocol.IceCandidate) -> None:
        if self.engine:
            await self.engine.handle_candidate(msg.candidate)

    async def _on_signaling_closed(self) -> None:
        logger.warning("call signaling connection lost room=%s", self.room)
        await self.leave()
        if self._callbacks.on_closed:
            await self._callbacks.on_closed()

    async def _on_signaling_error(self, error: str, payload: dict) -> None:
        logger.debug("call signaling error=%s", error)

    async def _on_negotiation_state(self, state: NegotiationState) -> None:
        await self._log(f"Negotiation {state.value}")
        if self._callbacks.on_negotiation_state:
            await self._callbacks.on_negotiation_state(state)

    async def _on_preview(self, track: Any) -> None:
        if self._callbacks.on_preview:
            await self._callbacks.on_preview(track)

    async def _set_remote_name(self, name: Optional[str]) -> None:
        if not name or name == self.remote_name:
            return
        self.remote_name = name
        if self._callbacks.on_remote_name:
            await self._callbacks.on_remote_name(name)

    async def _clear_remote(self) -> None:
        had_media = bool(self.remote_tracks)
        self.remote_tracks.clear()
        self.remote_id = None
        if self.remote_name is not None:
            self.remote_name = None
            if self._callbacks.on_remote_name:
                await self._callbacks.on_remote_name(None)
        if had_media:
            await self._notify_remote_media()

    async def _notify_remote_media(self) -> None:
        if self._callbacks.on_remote_media:
            await self._callbacks.on_remote_media(dict(self.remote_tracks))

    async def _log(self, message: str) -> None:
        if self._callbacks.on_log:
            await self._callbacks.on_log(message)
