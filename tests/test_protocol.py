"""Wire vocabulary: decoding and typed parsing."""

import pytest

from duocall.net import protocol


def test_parse_offer_keeps_raw_and_reads_sender():
    raw = protocol.tag_sender(protocol.make_offer("abc12345", {"type": "offer", "sdp": "v=0"}, "Ann"), "conn-1")
    msg = protocol.parse_message(raw)

    assert isinstance(msg, protocol.Offer)
    assert msg.sender == "conn-1"
    assert msg.room == "abc12345"
    assert msg.name == "Ann"
    assert msg.description == {"type": "offer", "sdp": "v=0"}
    assert msg.raw is raw


def test_tag_sender_overrides_spoofed_from():
    spoofed = {"type": "chat-message", "text": "hi", "from": "someone-else"}
    tagged = protocol.tag_sender(spoofed, "real")

    assert tagged["from"] == "real"
    assert spoofed["from"] == "someone-else"


@pytest.mark.parametrize(
    "payload, expected",
    [
        (protocol.make_join("r1", "Bob"), protocol.Join),
        (protocol.make_ice("r1", {"candidate": "candidate:1 1 udp 1 1.2.3.4 5 typ host"}), protocol.IceCandidate),
        (protocol.make_chat("hello"), protocol.Chat),
        (protocol.make_reaction("👍"), protocol.Reaction),
        (protocol.make_toggle_hand(True), protocol.HandToggle),
        (protocol.make_welcome("c1"), protocol.Welcome),
        (protocol.make_room_users("r1", []), protocol.RoomUsers),
        (protocol.make_user_connected("c2", "Bob"), protocol.UserConnected),
        (protocol.make_user_disconnected("c2"), protocol.Disconnect),
    ],
)
def test_parse_each_event(payload, expected):
    assert isinstance(protocol.parse_message(payload), expected)


def test_user_connected_without_name_defaults_to_guest():
    msg = protocol.parse_message({"type": "user-connected", "participant_id": "c2"})
    assert msg.name == "Guest"


@pytest.mark.parametrize(
    "payload",
    [
        {"room": "r1"},
        {"type": "bogus"},
        {"type": "join-room"},
        {"type": "offer", "description": "not-a-dict"},
        {"type": "answer", "description": {"type": "answer"}},
        {"type": "toggle-hand", "raised": "yes"},
        {"type": "reaction", "emoji": ""},
        {"type": "ice-candidate", "candidate": "candidate:1"},
    ],
)
def test_parse_rejects_malformed(payload):
    with pytest.raises(protocol.ProtocolError):
        protocol.parse_message(payload)


def test_decode_rejects_non_objects():
    with pytest.raises(protocol.ProtocolError, match="invalid-json"):
        protocol.decode("{nope")
    with pytest.raises(protocol.ProtocolError, match="invalid-message"):
        protocol.decode("[1, 2]")


def test_encode_keeps_emoji_readable():
    assert protocol.encode(protocol.make_reaction("👍")) == '{"type":"reaction","emoji":"👍"}'


def test_envelope_reads_routing_fields_only():
    raw = {"type": "offer", "room": "r1", "name": "Ann", "description": "opaque", "from": "spoof"}
    msg = protocol.parse_envelope(raw)

    assert isinstance(msg, protocol.Relayed)
    assert (msg.kind, msg.room, msg.name) == ("offer", "r1", "Ann")
    assert msg.raw is raw

    hand = protocol.parse_envelope({"type": "toggle-hand", "raised": "maybe"})
    assert hand.room is None and hand.name == ""


def test_envelope_parses_join_in_full():
    assert isinstance(protocol.parse_envelope(protocol.make_join("r1", "Ann")), protocol.Join)
    with pytest.raises(protocol.ProtocolError):
        protocol.parse_envelope({"type": "join-room"})


@pytest.mark.parametrize(
    "payload",
    [
        {"room": "r1"},
        {"type": "room-users", "users": []},
        {"type": "bogus"},
        {"type": "chat-message", "room": 3, "text": "hi"},
    ],
)
def test_envelope_rejects_non_client_frames(payload):
    with pytest.raises(protocol.ProtocolError):
        protocol.parse_envelope(payload)
