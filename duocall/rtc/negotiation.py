"""Offer/answer state machine for one call.

The engine only talks to a ``PeerTransport`` (the local WebRTC engine) and to
its callbacks (which reach the relay). It never sees the other client
directly.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Iterator, Optional, Protocol, Set

from ..net.protocol import IceCandidateDict, SessionDescriptionDict


logger = logging.getLogger(__name__)


AsyncCallback = Callable[..., Awaitable[None]]


class NegotiationState(str, enum.Enum):
    IDLE = "idle"
    OFFER_SENT = "offer-sent"
    ANSWER_SENT = "offer-received-answer-sent"
    STABLE = "stable"
    FAILED = "failed"


class PeerTransport(Protocol):
    """What the engine needs from the platform's peer connection."""

    supports_ice_restart: bool

    def add_local_track(self, track: Any) -> None: ...

    async def create_offer(self, *, ice_restart: bool = False) -> SessionDescriptionDict:
        """Create an offer and install it as the local description."""

    async def create_answer(self) -> SessionDescriptionDict:
        """Create an answer and install it as the local description."""

    async def set_remote_description(self, description: SessionDescriptionDict) -> None: ...

    async def add_ice_candidate(self, candidate: IceCandidateDict) -> None: ...

    async def replace_outgoing_track(self, kind: str, track: Any) -> None: ...

    async def close(self) -> None: ...


def _candidate_key(candidate: IceCandidateDict) -> str:
    return json.dumps(candidate, sort_keys=True, separators=(",", ":"))


class CandidateBuffer:
    """Remote candidates waiting for a remote description, in arrival order.

    Also remembers every candidate it has admitted so a re-delivered one is
    never applied twice.
    """

    def __init__(self) -> None:
        self._pending: Deque[IceCandidateDict] = deque()
        self._seen: Set[str] = set()

    def __len__(self) -> int:
        return len(self._pending)

    def admit(self, candidate: IceCandidateDict) -> bool:
        """Mark a candidate as consumed; False if it was seen before."""
        key = _candidate_key(candidate)
        if key in self._seen:
            return False
        self._seen.add(key)
        return True

    def add(self, candidate: IceCandidateDict) -> bool:
        if not self.admit(candidate):
            return False
        self._pending.append(candidate)
        return True

    def drain(self) -> Iterator[IceCandidateDict]:
        # Items appended while the caller awaits between steps are yielded too.
        while self._pending:
            yield self._pending.popleft()

    def clear(self) -> None:
        self._pending.clear()
        self._seen.clear()


@dataclass
class NegotiationCallbacks:
    send_offer: Optional[AsyncCallback] = None  # (description: dict)
    send_answer: Optional[AsyncCallback] = None  # (description: dict)
    on_state: Optional[AsyncCallback] = None  # (state: NegotiationState)
    on_rejoin: Optional[AsyncCallback] = None  # () restart unsupported, tear down and join again


class NegotiationEngine:
    """Drives one offer/answer exchange and its ICE candidate buffer.

    The side that sees ``user-connected`` offers; the side that receives an
    offer answers. Simultaneous offers are not arbitrated: whichever offer a
    client applies is the one it answers.
    """

    def __init__(self, transport: PeerTransport, callbacks: Optional[NegotiationCallbacks] = None):
        self.transport = transport
        self._callbacks = callbacks or NegotiationCallbacks()
        self.state = NegotiationState.IDLE
        self.role: Optional[str] = None  # "offerer" | "answerer"
        self.candidates = CandidateBuffer()

        self._remote_installed = False
        self._awaiting_answer = False
        self._flushing = False
        self._closed = False
        self._lock = asyncio.Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def has_remote_description(self) -> bool:
        return self._remote_installed

    async def handle_peer_joined(self, peer_id: str = "") -> None:
        """Local ``user-connected``: become the offering side."""
        async with self._lock:
            if self._closed:
                return
            if self.state is not NegotiationState.IDLE:
                logger.debug("negotiation user-connected ignored peer=%s state=%s", peer_id, self.state.value)
                return
            self.role = "offerer"
            await self._send_offer(ice_restart=False)

    async def handle_offer(self, description: SessionDescriptionDict) -> None:
        async with self._lock:
            if self._closed:
                return
            if self.state is NegotiationState.OFFER_SENT:
                logger.warning("negotiation offer received while offer pending (glare); applying it")
            if self.role is None:
                self.role = "answerer"

            self._remote_installed = False
            self._awaiting_answer = False
            try:
                await self.transport.set_remote_description(description)
                if self._closed:
                    return
                self._remote_installed = True
                await self._flush_candidates()
                if self._closed:
                    return
                answer = await self.transport.create_answer()
            except Exception:
                await self._fail("apply offer")
                return
            if self._closed:
                return

            await self._set_state(NegotiationState.ANSWER_SENT)
            logger.info("negotiation answer created sdp_len=%s", len(answer.get("sdp", "")))
            if self._callbacks.send_answer:
                await self._callbacks.send_answer(answer)

    async def handle_answer(self, description: SessionDescriptionDict) -> None:
        async with self._lock:
            if self._closed:
                return
            if not self._awaiting_answer or self._remote_installed:
                logger.debug("negotiation redundant answer ignored state=%s", self.state.value)
                return
            try:
                await self.transport.set_remote_description(description)
            except Exception:
                await self._fail("apply answer")
                return
            if self._closed:
                return
            self._remote_installed = True
            self._awaiting_answer = False
            await self._flush_candidates()
            if self._closed:
                return
            await self._set_state(NegotiationState.STABLE)

    async def handle_candidate(self, candidate: Optional[IceCandidateDict]) -> None:
        """Apply a remote candidate now, or buffer it until a remote description exists."""
        if self._closed or not candidate:
            return

        if self._remote_installed and not self._flushing:
            if not self.candidates.admit(candidate):
                logger.debug("negotiation duplicate candidate ignored")
                return
            await self._apply_candidate(candidate)
            return

        if self.candidates.add(candidate):
            logger.debug("negotiation candidate buffered pending=%s", len(self.candidates))
        else:
            logger.debug("negotiation duplicate candidate ignored")

    async def handle_connection_state(self, state: str) -> None:
        if self._closed:
            return
        logger.info("negotiation connection state=%s negotiation=%s", state, self.state.value)
        if state == "connected":
            if self.state in (NegotiationState.ANSWER_SENT, NegotiationState.FAILED):
                await self._set_state(NegotiationState.STABLE)
            return
        if state != "failed":
            return
        if self.role != "offerer":
            # The offering side restarts; this side answers the restart offer.
            logger.info("negotiation connectivity failed, waiting for peer restart")
            return
        if self.state is NegotiationState.STABLE:
            await self.restart()

    async def restart(self) -> None:
        """Restart ICE on the existing session, or fall back to a full rejoin."""
        if not self.transport.supports_ice_restart:
            logger.info("negotiation ice restart unsupported, rejoining")
            if self._callbacks.on_rejoin:
                await self._callbacks.on_rejoin()
            return
        async with self._lock:
            if self._closed:
                return
            logger.info("negotiation ice restart")
            await self._send_offer(ice_restart=True)

    async def close(self) -> None:
        """Tear the session down. Nothing is kept for resumption."""
        if self._closed:
            return
        self._closed = True
        self.candidates.clear()
        self._remote_installed = False
        self._awaiting_answer = False
        self.state = NegotiationState.IDLE
        logger.info("negotiation closed")
        await self.transport.close()

    async def _send_offer(self, *, ice_restart: bool) -> None:
        try:
            offer = await self.transport.create_offer(ice_restart=ice_restart)
        except Exception:
            await self._fail("create offer")
            return
        if self._closed:
            return
        # A new exchange: candidates wait for the answer to this offer.
        self._remote_installed = False
        self._awaiting_answer = True
        await self._set_state(NegotiationState.OFFER_SENT)
        logger.info("negotiation offer created restart=%s sdp_len=%s", ice_restart, len(offer.get("sdp", "")))
        if self._callbacks.send_offer:
            await self._callbacks.send_offer(offer)

    async def _flush_candidates(self) -> None:
        self._flushing = True
        try:
            flushed = 0
            for candidate in self.candidates.drain():
                if self._closed:
                    return
                await self._apply_candidate(candidate)
                flushed += 1
            if flushed:
                logger.debug("negotiation flushed candidates count=%s", flushed)
        finally:
            self._flushing = False

    async def _apply_candidate(self, candidate: IceCandidateDict) -> None:
        try:
            await self.transport.add_ice_candidate(candidate)
        except Exception as e:
            logger.warning("negotiation candidate rejected: %s", e)

    async def _fail(self, step: str) -> None:
        logger.exception("negotiation %s failed", step)
        await self._set_state(NegotiationState.FAILED)

    async def _set_state(self, state: NegotiationState) -> None:
        if state is self.state:
            return
        logger.debug("negotiation state %s -> %s", self.state.value, state.value)
        self.state = state
        if self._callbacks.on_state:
            await self._callbacks.on_state(state)
