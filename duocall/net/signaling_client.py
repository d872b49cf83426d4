"""WebSocket signaling client.

Knows nothing about aiortc. It only speaks the JSON protocol
implemented by `server/app.py` and hands typed messages to its callbacks, one
at a time, in arrival order.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import websockets

from . import protocol


logger = logging.getLogger(__name__)


AsyncCallback = Callable[..., Awaitable[None]]


@dataclass
class SignalingCallbacks:
	on_log: Optional[AsyncCallback] = None
	on_welcome: Optional[AsyncCallback] = None  # (participant_id: str)
	on_room_users: Optional[AsyncCallback] = None  # (room: str, users: list[dict])
	on_user_connected: Optional[AsyncCallback] = None  # (participant_id: str, name: str)
	on_user_disconnected: Optional[AsyncCallback] = None  # (participant_id: str)
	on_offer: Optional[AsyncCallback] = None  # (msg: protocol.Offer)
	on_answer: Optional[AsyncCallback] = None  # (msg: protocol.Answer)
	on_ice: Optional[AsyncCallback] = None  # (msg: protocol.IceCandidate)
	on_chat: Optional[AsyncCallback] = None  # (msg: protocol.Chat)
	on_reaction: Optional[AsyncCallback] = None  # (msg: protocol.Reaction)
	on_hand: Optional[AsyncCallback] = None  # (msg: protocol.HandToggle)
	on_closed: Optional[AsyncCallback] = None  # ()
	on_error: Optional[AsyncCallback] = None  # (error: str, payload: dict)


class SignalingClient:
	def __init__(self, url: str, callbacks: Optional[SignalingCallbacks] = None):
		self.url = url
		self.callbacks = callbacks or SignalingCallbacks()

		self.participant_id: Optional[str] = None
		# websockets' protocol types moved between versions; keep runtime-safe.
		self._ws: Optional[Any] = None
		self._recv_task: Optional[asyncio.Task[None]] = None
		self._send_lock = asyncio.Lock()
		self._welcome_evt = asyncio.Event()

	@property
	def is_connected(self) -> bool:
		return self._ws is not None and self._recv_task is not None and not self._recv_task.done()

	async def connect(self) -> bool:
		if self.is_connected:
			return True

		await self._log(f"Connecting to {self.url}")
		logger.info("signaling connect url=%s", self.url)
		self._welcome_evt.clear()
		try:
			self._ws = await websockets.connect(self.url)
		except Exception:
			logger.exception("signaling connect failed url=%s", self.url)
			await self._emit_error("connect-failed", {"url": self.url})
			return False
		self._recv_task = asyncio.create_task(self._recv_loop(), name="signaling-recv")
		return True

	async def wait_welcome(self, timeout: float = 10.0) -> Optional[str]:
		"""Wait until the server has assigned this connection its id."""
		try:
			await asyncio.wait_for(self._welcome_evt.wait(), timeout)
		except asyncio.TimeoutError:
			logger.warning("signaling welcome timeout url=%s", self.url)
			return None
		return self.participant_id

	async def disconnect(self) -> None:
		await self._log("Disconnecting")
		logger.info("signaling disconnect")
		# Clearing _ws first keeps the recv loop from reporting a voluntary close.
		ws = self._ws
		self._ws = None
		task = self._recv_task
		self._recv_task = None
		if task and task is not asyncio.current_task():
			task.cancel()
			try:
				await task
			except asyncio.CancelledError:
				pass

		if ws is not None:
			try:
				await ws.close()
			except Exception as e:
				logger.debug("signaling close failed: %s", e)
		self.participant_id = None
		self._welcome_evt.clear()

	async def join(self, room: str, name: str) -> None:
		await self.send(protocol.make_join(room, name, self.participant_id))

	async def send_offer(self, room: str, description: protocol.SessionDescriptionDict, name: str = "") -> None:
		await self.send(protocol.make_offer(room, description, name))

	async def send_answer(self, room: str, description: protocol.SessionDescriptionDict, name: str = "") -> None:
		await self.send(protocol.make_answer(room, description, name))

	async def send_ice(self, room: str, candidate: protocol.IceCandidateDict) -> None:
		await self.send(protocol.make_ice(room, candidate))

	async def send(self, payload: Dict[str, Any]) -> None:
		ws = self._ws
		if ws is None:
			raise protocol.ProtocolError("signaling not connected")
		mtype = payload.get("type")
		if mtype in (protocol.OFFER, protocol.ANSWER):
			desc = payload.get("description") or {}
			logger.info("signaling send type=%s room=%s sdp_len=%s", mtype, payload.get("room"), len(str(desc.get("sdp", ""))))
		else:
			logger.debug("signaling send type=%s", mtype)
		raw = protocol.encode(payload)
		async with self._send_lock:
			await ws.send(raw)

	async def _recv_loop(self) -> None:
		assert self._ws is not None
		ws = self._ws
		logger.debug("signaling recv loop started")

		try:
			async for raw in ws:
				try:
					msg = protocol.parse_message(protocol.decode(raw))
				except protocol.ProtocolError as e:
					await self._emit_error(str(e).split(":", 1)[0], {"raw": raw})
					continue
				await self._dispatch(msg)

		except asyncio.CancelledError:
			pass
		except Exception as e:
			logger.exception("signaling recv loop crashed")
			await self._emit_error(f"recv-loop-exception: {e}", {})
		finally:
			logger.debug("signaling recv loop stopped")
			try:
				await ws.close()
			except Exception:
				pass
			if self._ws is ws:
				self._ws = None
				if self.callbacks.on_closed:
					await self.callbacks.on_closed()

	async def _dispatch(self, msg: protocol.AnyMessage) -> None:
		cb = self.callbacks

		if isinstance(msg, protocol.Welcome):
			self.participant_id = msg.participant_id
			self._welcome_evt.set()
			logger.info("signaling welcome participant_id=%s", self.participant_id)
			if cb.on_welcome:
				await cb.on_welcome(msg.participant_id)
			return

		if isinstance(msg, protocol.RoomUsers):
			logger.info("signaling room-users room=%s users=%s", msg.room, len(msg.users))
			if cb.on_room_users:
				await cb.on_room_users(msg.room, msg.users)
			return

		if isinstance(msg, protocol.UserConnected):
			logger.info("signaling user-connected participant_id=%s", msg.participant_id)
			if cb.on_user_connected:
				await cb.on_user_connected(msg.participant_id, msg.name)
			return

		if isinstance(msg, protocol.Disconnect):
			logger.info("signaling user-disconnected participant_id=%s", msg.participant_id)
			if cb.on_user_disconnected:
				await cb.on_user_disconnected(msg.participant_id or "")
			return

		if isinstance(msg, protocol.Offer):
			logger.info("signaling offer from=%s sdp_len=%s", msg.sender, len(msg.description["sdp"]))
			if cb.on_offer:
				await cb.on_offer(msg)
			return

		if isinstance(msg, protocol.Answer):
			logger.info("signaling answer from=%s sdp_len=%s", msg.sender, len(msg.description["sdp"]))
			if cb.on_answer:
				await cb.on_answer(msg)
			return

		if isinstance(msg, protocol.IceCandidate):
			logger.debug("signaling ice from=%s has_candidate=%s", msg.sender, bool(msg.candidate))
			if cb.on_ice:
				await cb.on_ice(msg)
			return

		if isinstance(msg, protocol.Chat):
			if cb.on_chat:
				await cb.on_chat(msg)
			return

		if isinstance(msg, protocol.Reaction):
			if cb.on_reaction:
				await cb.on_reaction(msg)
			return

		if isinstance(msg, protocol.HandToggle):
			if cb.on_hand:
				await cb.on_hand(msg)
			return

		await self._emit_error("unexpected-type", msg.raw)

	async def _emit_error(self, error: str, payload: Dict[str, Any]) -> None:
		await self._log(f"Signaling error: {error}")
		if self.callbacks.on_error:
			await self.callbacks.on_error(error, payload)

	async def _log(self, message: str) -> None:
		if self.callbacks.on_log:
			await self.callbacks.on_log(message)
