"""WebSocket signaling server.

One connection per client. Each connection gets a server-assigned id (sent in
``welcome``), one dispatch loop for its inbound frames and one writer task for
outbound frames. Transport close is the only way to leave a room.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from ..config import ServerConfig
from ..net import protocol
from .registry import RoomRegistry
from .relay import PeerConnection, SignalingRelay


logger = logging.getLogger(__name__)


class SignalingServer:
	def __init__(self, config: Optional[ServerConfig] = None, registry: Optional[RoomRegistry] = None):
		self.config = config or ServerConfig()
		self.registry = registry or RoomRegistry()
		self.relay = SignalingRelay(self.registry)

	async def handler(self, ws: Any) -> None:
		connection_id = uuid.uuid4().hex
		conn = PeerConnection(connection_id, ws.send, max_queue=self.config.outbound_queue)
		self.relay.attach(conn)
		conn.start()
		conn.deliver(protocol.make_welcome(connection_id))
		logger.info("server connect conn=%s remote=%s", connection_id, getattr(ws, "remote_address", None))

		try:
			async for raw in ws:
				await self.dispatch(connection_id, raw)
		except ConnectionClosed as e:
			logger.debug("server connection closed conn=%s code=%s", connection_id, getattr(e, "code", None))
		finally:
			await self.handle(connection_id, protocol.Disconnect(participant_id=connection_id, sender=connection_id))
			self.relay.detach(connection_id)
			await conn.close()
			logger.info("server disconnect conn=%s", connection_id)

	async def dispatch(self, connection_id: str, raw: Any) -> None:
		"""Decode one inbound frame and hand it to ``handle``; bad frames are dropped."""
		try:
			msg = protocol.parse_envelope(protocol.decode(raw))
		except protocol.ProtocolError as e:
			logger.debug("server drop frame conn=%s error=%s", connection_id, e)
			return
		await self.handle(connection_id, msg)

	async def handle(self, connection_id: str, msg: protocol.AnyMessage) -> None:
		if isinstance(msg, protocol.Join):
			await self.relay.join(msg.room, connection_id, msg.name)
			return

		if isinstance(msg, protocol.Disconnect):
			if msg.raw:
				# user-disconnected is server-to-client only
				logger.debug("server drop client-sent user-disconnected conn=%s", connection_id)
				return
			await self.relay.leave(connection_id)
			return

		mtype = msg.raw.get("type")
		if mtype in protocol.RELAYED_TYPES:
			await self.relay.relay(getattr(msg, "room", None), connection_id, msg)
			return

		logger.debug("server drop type=%s conn=%s reason=not-client-message", mtype, connection_id)

	async def serve(self, stop: Optional[asyncio.Future[None]] = None) -> None:
		"""Serve until ``stop`` resolves (forever when omitted)."""
		host, port = self.config.host, self.config.port
		async with websockets.serve(self.handler, host, port):
			logger.info("signaling server listening on ws://%s:%s", host, port)
			await (stop if stop is not None else asyncio.get_running_loop().create_future())
		logger.info("signaling server stopped")
