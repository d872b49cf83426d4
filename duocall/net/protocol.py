"""Signaling protocol helpers.

Both ends speak JSON objects over a single WebSocket. Every object carries a
``type`` field naming the event; the relay attaches ``from`` (the sender's
connection id) to everything it forwards and overwrites any value a client put
there.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, TypedDict, Union


# Message type constants
WELCOME = "welcome"
JOIN_ROOM = "join-room"
ROOM_USERS = "room-users"
USER_CONNECTED = "user-connected"
USER_DISCONNECTED = "user-disconnected"

OFFER = "offer"
ANSWER = "answer"
ICE_CANDIDATE = "ice-candidate"

CHAT_MESSAGE = "chat-message"
REACTION = "reaction"
TOGGLE_HAND = "toggle-hand"

# Client messages the relay forwards to the other room member(s).
RELAYED_TYPES = frozenset({OFFER, ANSWER, ICE_CANDIDATE, CHAT_MESSAGE, REACTION, TOGGLE_HAND})

DEFAULT_NAME = "Guest"


class PeerInfo(TypedDict, total=False):
	participant_id: str
	name: str


class SessionDescriptionDict(TypedDict):
	type: str
	sdp: str


class IceCandidateDict(TypedDict, total=False):
	candidate: str
	sdpMid: Optional[str]
	sdpMLineIndex: Optional[int]


@dataclass(eq=False)
class ProtocolError(Exception):
	message: str

	def __str__(self) -> str:
		return self.message


@dataclass
class SignalingMessage:
	"""Base of the typed message union.

	``sender`` is only ever filled from the relay's ``from`` tag (or by the
	server itself), never from a field a client controls. ``raw`` keeps the
	decoded object so the relay can forward it untouched.
	"""

	sender: Optional[str] = field(default=None, kw_only=True)
	raw: Dict[str, Any] = field(default_factory=dict, kw_only=True, repr=False, compare=False)


@dataclass
class Join(SignalingMessage):
	room: str
	name: str = ""
	participant_id: Optional[str] = None


@dataclass
class Offer(SignalingMessage):
	description: SessionDescriptionDict
	room: Optional[str] = None
	name: str = ""


@dataclass
class Answer(SignalingMessage):
	description: SessionDescriptionDict
	room: Optional[str] = None
	name: str = ""


@dataclass
class IceCandidate(SignalingMessage):
	candidate: Optional[IceCandidateDict]
	room: Optional[str] = None


@dataclass
class Chat(SignalingMessage):
	text: str


@dataclass
class Reaction(SignalingMessage):
	emoji: str


@dataclass
class HandToggle(SignalingMessage):
	raised: bool


@dataclass
class Disconnect(SignalingMessage):
	"""Transport-level close. Produced locally, never sent by a client."""

	participant_id: Optional[str] = None


@dataclass
class Relayed(SignalingMessage):
	"""Server-side view of a client frame it forwards without reading the payload."""

	kind: str
	room: Optional[str] = None
	name: str = ""


@dataclass
class Welcome(SignalingMessage):
	participant_id: str


@dataclass
class RoomUsers(SignalingMessage):
	room: str
	users: List[PeerInfo]


@dataclass
class UserConnected(SignalingMessage):
	participant_id: str
	name: str


AnyMessage = Union[
	Join,
	Offer,
	Answer,
	IceCandidate,
	Chat,
	Reaction,
	HandToggle,
	Disconnect,
	Welcome,
	RoomUsers,
	UserConnected,
	Relayed,
]


def make_welcome(participant_id: str) -> Dict[str, Any]:
	return {"type": WELCOME, "participant_id": participant_id}


def make_join(room: str, name: str, participant_id: Optional[str] = None) -> Dict[str, Any]:
	msg: Dict[str, Any] = {"type": JOIN_ROOM, "room": room, "name": name}
	if participant_id:
		msg["participant_id"] = participant_id
	return msg


def make_room_users(room: str, users: List[PeerInfo]) -> Dict[str, Any]:
	return {"type": ROOM_USERS, "room": room, "users": list(users)}


def make_user_connected(participant_id: str, name: str) -> Dict[str, Any]:
	return {"type": USER_CONNECTED, "participant_id": participant_id, "name": name}


def make_user_disconnected(participant_id: str) -> Dict[str, Any]:
	return {"type": USER_DISCONNECTED, "participant_id": participant_id}


def make_offer(room: str, description: SessionDescriptionDict, name: str = "") -> Dict[str, Any]:
	return {"type": OFFER, "room": room, "description": dict(description), "name": name}


def make_answer(room: str, description: SessionDescriptionDict, name: str = "") -> Dict[str, Any]:
	return {"type": ANSWER, "room": room, "description": dict(description), "name": name}


def make_ice(room: str, candidate: IceCandidateDict) -> Dict[str, Any]:
	return {"type": ICE_CANDIDATE, "room": room, "candidate": dict(candidate)}


def make_chat(text: str) -> Dict[str, Any]:
	return {"type": CHAT_MESSAGE, "text": text}


def make_reaction(emoji: str) -> Dict[str, Any]:
	return {"type": REACTION, "emoji": emoji}


def make_toggle_hand(raised: bool) -> Dict[str, Any]:
	return {"type": TOGGLE_HAND, "raised": bool(raised)}


def tag_sender(msg: Dict[str, Any], sender: str) -> Dict[str, Any]:
	"""Copy of ``msg`` with ``from`` set to the true sender."""
	tagged = dict(msg)
	tagged["from"] = sender
	return tagged


def encode(msg: Dict[str, Any]) -> str:
	return json.dumps(msg, separators=(",", ":"), ensure_ascii=False)


def decode(raw: Union[str, bytes]) -> Dict[str, Any]:
	try:
		msg = json.loads(raw)
	except (json.JSONDecodeError, UnicodeDecodeError) as e:
		raise ProtocolError(f"invalid-json: {e}") from e
	if not isinstance(msg, dict):
		raise ProtocolError("invalid-message")
	return msg


def _require_str(msg: Dict[str, Any], key: str) -> str:
	value = msg.get(key)
	if not isinstance(value, str) or not value:
		raise ProtocolError(f"missing field {key!r} in {msg.get('type')!r}")
	return value


def _optional_str(msg: Dict[str, Any], key: str) -> Optional[str]:
	value = msg.get(key)
	return value if isinstance(value, str) and value else None


def _description(msg: Dict[str, Any]) -> SessionDescriptionDict:
	desc = msg.get("description")
	if not isinstance(desc, dict):
		raise ProtocolError(f"missing description in {msg.get('type')!r}")
	sdp = desc.get("sdp")
	dtype = desc.get("type")
	if not isinstance(sdp, str) or not isinstance(dtype, str):
		raise ProtocolError(f"malformed description in {msg.get('type')!r}")
	return {"type": dtype, "sdp": sdp}


def parse_message(msg: Dict[str, Any]) -> AnyMessage:
	"""Turn a decoded JSON object into its typed message.

	Raises ProtocolError for unknown types or missing fields.
	"""

	mtype = msg.get("type")
	if not isinstance(mtype, str):
		raise ProtocolError("missing-type")

	sender = _optional_str(msg, "from")
	common: Dict[str, Any] = {"sender": sender, "raw": msg}

	if mtype == JOIN_ROOM:
		return Join(
			room=_require_str(msg, "room"),
			name=str(msg.get("name") or ""),
			participant_id=_optional_str(msg, "participant_id"),
			**common,
		)
	if mtype == OFFER:
		return Offer(
			description=_description(msg),
			room=_optional_str(msg, "room"),
			name=str(msg.get("name") or ""),
			**common,
		)
	if mtype == ANSWER:
		return Answer(
			description=_description(msg),
			room=_optional_str(msg, "room"),
			name=str(msg.get("name") or ""),
			**common,
		)
	if mtype == ICE_CANDIDATE:
		candidate = msg.get("candidate")
		if candidate is not None and not isinstance(candidate, dict):
			raise ProtocolError("malformed candidate")
		return IceCandidate(candidate=candidate, room=_optional_str(msg, "room"), **common)
	if mtype == CHAT_MESSAGE:
		text = msg.get("text")
		if not isinstance(text, str):
			raise ProtocolError("missing field 'text' in 'chat-message'")
		return Chat(text=text, **common)
	if mtype == REACTION:
		return Reaction(emoji=_require_str(msg, "emoji"), **common)
	if mtype == TOGGLE_HAND:
		raised = msg.get("raised")
		if not isinstance(raised, bool):
			raise ProtocolError("missing field 'raised' in 'toggle-hand'")
		return HandToggle(raised=raised, **common)
	if mtype == WELCOME:
		return Welcome(participant_id=_require_str(msg, "participant_id"), **common)
	if mtype == ROOM_USERS:
		users = msg.get("users", [])
		if not isinstance(users, list):
			raise ProtocolError("malformed users in 'room-users'")
		return RoomUsers(
			room=str(msg.get("room") or ""),
			users=[u for u in users if isinstance(u, dict)],
			**common,
		)
	if mtype == USER_CONNECTED:
		return UserConnected(
			participant_id=_require_str(msg, "participant_id"),
			name=str(msg.get("name") or DEFAULT_NAME),
			**common,
		)
	if mtype == USER_DISCONNECTED:
		return Disconnect(participant_id=_optional_str(msg, "participant_id"), **common)

	raise ProtocolError(f"unknown-type: {mtype}")


def parse_envelope(msg: Dict[str, Any]) -> AnyMessage:
	"""Server-side parse of a client frame.

	``join-room`` and ``user-disconnected`` are parsed in full since the server
	acts on them. Relayed types only have their routing fields read (``room``,
	and ``name`` on offer/answer); the rest of the frame is forwarded as it
	arrived, whatever its shape.
	"""

	mtype = msg.get("type")
	if not isinstance(mtype, str):
		raise ProtocolError("missing-type")
	if mtype in (JOIN_ROOM, USER_DISCONNECTED):
		return parse_message(msg)
	if mtype not in RELAYED_TYPES:
		raise ProtocolError(f"unknown-type: {mtype}")

	room = msg.get("room")
	if room is not None and not isinstance(room, str):
		raise ProtocolError(f"malformed room in {mtype!r}")
	name = msg.get("name") if mtype in (OFFER, ANSWER) else None
	return Relayed(
		kind=mtype,
		room=room or None,
		name=name if isinstance(name, str) else "",
		sender=_optional_str(msg, "from"),
		raw=msg,
	)
