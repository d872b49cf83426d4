"""Signaling relay.

Routes room membership events and forwards signaling payloads between the
members of a room. The relay never looks inside offers, answers or candidates;
it only checks that the sender is a member and tags what it forwards with the
sender's connection id.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..net import protocol
from .registry import Participant, RoomRegistry


logger = logging.getLogger(__name__)


SendText = Callable[[str], Awaitable[None]]


class PeerConnection:
	"""Outbound side of one client connection.

	Frames are queued and written by a dedicated task so the relay never waits
	on a slow recipient. Per-connection order is the queue order.
	"""

	def __init__(self, connection_id: str, send: SendText, *, max_queue: int = 256):
		self.connection_id = connection_id
		self._send = send
		self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=max(0, max_queue))
		self._writer_task: Optional[asyncio.Task[None]] = None
		self._closed = False

	@property
	def closed(self) -> bool:
		return self._closed

	def start(self) -> None:
		if self._writer_task is None:
			self._writer_task = asyncio.create_task(self._writer(), name=f"relay-writer-{self.connection_id}")

	def deliver(self, msg: Dict[str, Any]) -> bool:
		"""Queue a frame; returns False when it was dropped."""
		if self._closed:
			return False
		try:
			self._queue.put_nowait(protocol.encode(msg))
		except asyncio.QueueFull:
			logger.warning("relay outbound queue full conn=%s dropped type=%s", self.connection_id, msg.get("type"))
			return False
		return True

	async def close(self) -> None:
		if self._closed:
			return
		self._closed = True
		task = self._writer_task
		self._writer_task = None
		if task is None:
			return
		task.cancel()
		try:
			await task
		except asyncio.CancelledError:
			pass

	async def _writer(self) -> None:
		while True:
			raw = await self._queue.get()
			try:
				await self._send(raw)
			except asyncio.CancelledError:
				raise
			except Exception as e:
				# The reader side notices the closed transport and runs leave().
				logger.debug("relay send failed conn=%s: %s", self.connection_id, e)
				self._closed = True
				return


class SignalingRelay:
	def __init__(self, registry: RoomRegistry):
		self.registry = registry
		self._connections: Dict[str, PeerConnection] = {}

	def attach(self, connection: PeerConnection) -> None:
		self._connections[connection.connection_id] = connection

	def detach(self, connection_id: str) -> Optional[PeerConnection]:
		return self._connections.pop(connection_id, None)

	async def join(self, room_id: str, connection_id: str, name: str = "") -> List[protocol.PeerInfo]:
		"""Register a participant and announce it.

		Returns the members that were present before this join. The snapshot is
		also sent to the joiner as ``room-users`` (even when empty), and every
		existing member gets one ``user-connected``.
		"""

		current = self.registry.get(connection_id)
		if current is not None and current.room_id != room_id:
			await self.leave(connection_id)

		participant, existing = await self.registry.add(room_id, connection_id, name)
		snapshot = [p.info() for p in existing if p.connection_id != connection_id]
		logger.info("relay join room=%s conn=%s name=%s existing=%s", room_id, connection_id, participant.name, len(snapshot))

		self._send_to(connection_id, protocol.make_room_users(room_id, snapshot))
		announce = protocol.make_user_connected(connection_id, participant.name)
		for other in existing:
			if other.connection_id != connection_id:
				self._send_to(other.connection_id, announce)
		return snapshot

	async def relay(self, room_id: Optional[str], connection_id: str, message: protocol.AnyMessage) -> int:
		"""Forward ``message`` to every other member of the sender's room.

		Messages from connections that are not members (or that name a room
		other than their own) are dropped silently. Returns the number of
		recipients the frame was queued for.
		"""

		sender = self.registry.get(connection_id)
		if sender is None:
			logger.debug("relay drop type=%s conn=%s reason=not-joined", message.raw.get("type"), connection_id)
			return 0
		if room_id is not None and room_id != sender.room_id:
			logger.debug(
				"relay drop type=%s conn=%s reason=room-mismatch room=%s actual=%s",
				message.raw.get("type"),
				connection_id,
				room_id,
				sender.room_id,
			)
			return 0

		name = getattr(message, "name", "")
		if message.raw.get("type") in (protocol.OFFER, protocol.ANSWER) and name:
			await self.registry.rename(connection_id, name)

		tagged = protocol.tag_sender(message.raw, connection_id)
		mtype = tagged.get("type")
		if mtype in (protocol.OFFER, protocol.ANSWER):
			logger.info("relay %s from=%s room=%s", mtype, connection_id, sender.room_id)
		else:
			logger.debug("relay %s from=%s room=%s", mtype, connection_id, sender.room_id)

		delivered = 0
		for other in self._others(sender):
			if self._send_to(other.connection_id, tagged):
				delivered += 1
		return delivered

	async def leave(self, connection_id: str) -> Optional[Participant]:
		"""Remove a participant and tell the rest of its room."""
		participant = await self.registry.remove(connection_id)
		if participant is None:
			return None
		logger.info("relay leave room=%s conn=%s", participant.room_id, connection_id)
		gone = protocol.make_user_disconnected(connection_id)
		for other in self.registry.members(participant.room_id):
			self._send_to(other.connection_id, gone)
		return participant

	def _others(self, sender: Participant) -> List[Participant]:
		return [p for p in self.registry.members(sender.room_id) if p.connection_id != sender.connection_id]

	def _send_to(self, connection_id: str, msg: Dict[str, Any]) -> bool:
		conn = self._connections.get(connection_id)
		if conn is None:
			logger.debug("relay no connection conn=%s type=%s", connection_id, msg.get("type"))
			return False
		return conn.deliver(msg)
