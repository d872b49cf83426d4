"""Chat, reactions and raised hands carried over the relay.

Best-effort and ephemeral: nothing is acknowledged, nothing outlives the call.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..net import protocol


logger = logging.getLogger(__name__)


SendMessage = Callable[[Dict[str, Any]], Awaitable[None]]
AsyncCallback = Callable[..., Awaitable[None]]


@dataclass
class ChatEntry:
	text: str
	sender: str  # "local" | "remote"
	participant_id: Optional[str] = None


@dataclass(eq=False)
class ReactionEntry:
	emoji: str
	participant_id: Optional[str]
	handle: Optional[asyncio.TimerHandle] = field(default=None, repr=False)


@dataclass
class PresenceCallbacks:
	on_chat: Optional[AsyncCallback] = None  # (entry: ChatEntry)
	on_reactions: Optional[AsyncCallback] = None  # (reactions: list[ReactionEntry])
	on_hand: Optional[AsyncCallback] = None  # (participant_id: str | None, raised: bool)


class PresenceChannel:
	def __init__(
		self,
		send: SendMessage,
		*,
		reaction_seconds: float = 3.0,
		callbacks: Optional[PresenceCallbacks] = None,
	):
		self._send = send
		self.reaction_seconds = reaction_seconds
		self._callbacks = callbacks or PresenceCallbacks()

		self.messages: List[ChatEntry] = []
		self.reactions: List[ReactionEntry] = []
		self.local_hand = False
		self.remote_hand = False

	async def send_chat(self, text: str) -> Optional[ChatEntry]:
		text = text.strip()
		if not text:
			return None
		await self._send(protocol.make_chat(text))
		entry = ChatEntry(text=text, sender="local")
		self.messages.append(entry)
		return entry

	async def send_reaction(self, emoji: str) -> None:
		if not emoji:
			return
		await self._send(protocol.make_reaction(emoji))
		self._show_reaction(ReactionEntry(emoji=emoji, participant_id=None))
		await self._notify_reactions()

	async def toggle_hand(self) -> bool:
		self.local_hand = not self.local_hand
		await self._send(protocol.make_toggle_hand(self.local_hand))
		return self.local_hand

	async def handle_chat(self, msg: protocol.Chat) -> None:
		entry = ChatEntry(text=msg.text, sender="remote", participant_id=msg.sender)
		self.messages.append(entry)
		if self._callbacks.on_chat:
			await self._callbacks.on_chat(entry)

	async def handle_reaction(self, msg: protocol.Reaction) -> None:
		logger.debug("presence reaction from=%s", msg.sender)
		self._show_reaction(ReactionEntry(emoji=msg.emoji, participant_id=msg.sender))
		await self._notify_reactions()

	async def handle_hand(self, msg: protocol.HandToggle) -> None:
		self.remote_hand = msg.raised
		logger.info("presence hand from=%s raised=%s", msg.sender, msg.raised)
		if self._callbacks.on_hand:
			await self._callbacks.on_hand(msg.sender, msg.raised)

	def clear_remote(self) -> None:
		"""Drop everything the departed peer left on screen."""
		self.remote_hand = False
		for entry in [r for r in self.reactions if r.participant_id is not None]:
			self._expire(entry)

	def clear(self) -> None:
		self.messages.clear()
		for entry in list(self.reactions):
			self._expire(entry)
		self.local_hand = False
		self.remote_hand = False

	def _show_reaction(self, entry: ReactionEntry) -> None:
		self.reactions.append(entry)
		loop = asyncio.get_running_loop()
		entry.handle = loop.call_later(self.reaction_seconds, self._on_reaction_timeout, entry)

	def _on_reaction_timeout(self, entry: ReactionEntry) -> None:
		self._expire(entry)
		if self._callbacks.on_reactions:
			asyncio.ensure_future(self._notify_reactions())

	def _expire(self, entry: ReactionEntry) -> None:
		if entry.handle is not None:
			entry.handle.cancel()
			entry.handle = None
		try:
			self.reactions.remove(entry)
		except ValueError:
			pass

	async def _notify_reactions(self) -> None:
		if self._callbacks.on_reactions:
			await self._callbacks.on_reactions(list(self.reactions))
