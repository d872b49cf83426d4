"""Process-wide room directory."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from ..net.protocol import DEFAULT_NAME, PeerInfo


logger = logging.getLogger(__name__)


@dataclass
class Participant:
	connection_id: str
	room_id: str
	name: str = DEFAULT_NAME

	def info(self) -> PeerInfo:
		return {"participant_id": self.connection_id, "name": self.name}


class RoomRegistry:
	"""Maps room ids to their members.

	A room exists only while it has at least one member; the entry is dropped
	when the last one leaves. Mutations are serialized by one lock, reads are
	plain dict lookups.
	"""

	def __init__(self) -> None:
		self._rooms: Dict[str, Dict[str, Participant]] = {}
		self._by_connection: Dict[str, Participant] = {}
		self._lock = asyncio.Lock()

	def __len__(self) -> int:
		return len(self._rooms)

	def __contains__(self, room_id: object) -> bool:
		return room_id in self._rooms

	async def add(self, room_id: str, connection_id: str, name: str = "") -> tuple[Participant, List[Participant]]:
		"""Register a participant; returns it plus the members that were already present.

		A connection that is already in some room is moved, so one connection
		is never listed twice.
		"""

		async with self._lock:
			previous = self._by_connection.get(connection_id)
			if previous is not None:
				self._discard(previous)

			members = self._rooms.setdefault(room_id, {})
			existing = list(members.values())
			participant = Participant(connection_id=connection_id, room_id=room_id, name=name or DEFAULT_NAME)
			members[connection_id] = participant
			self._by_connection[connection_id] = participant
		logger.debug("registry add room=%s conn=%s members=%s", room_id, connection_id, len(existing) + 1)
		return participant, existing

	async def remove(self, connection_id: str) -> Optional[Participant]:
		async with self._lock:
			participant = self._by_connection.get(connection_id)
			if participant is None:
				return None
			self._discard(participant)
		logger.debug("registry remove room=%s conn=%s", participant.room_id, connection_id)
		return participant

	async def rename(self, connection_id: str, name: str) -> None:
		"""Update a display name; empty names never overwrite."""
		if not name:
			return
		async with self._lock:
			participant = self._by_connection.get(connection_id)
			if participant is not None:
				participant.name = name

	def get(self, connection_id: str) -> Optional[Participant]:
		return self._by_connection.get(connection_id)

	def members(self, room_id: str) -> List[Participant]:
		return list(self._rooms.get(room_id, {}).values())

	def is_member(self, room_id: str, connection_id: str) -> bool:
		return connection_id in self._rooms.get(room_id, {})

	def _discard(self, participant: Participant) -> None:
		self._by_connection.pop(participant.connection_id, None)
		members = self._rooms.get(participant.room_id)
		if members is None:
			return
		members.pop(participant.connection_id, None)
		if not members:
			del self._rooms[participant.room_id]
