"""Signaling server: frame dispatch and full calls over real websockets."""

from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
import websockets

from conftest import FakeMediaDevices, FakeSocket, FakeTransport, settle, wait_until
from duocall.net import protocol
from duocall.net.signaling_client import SignalingCallbacks, SignalingClient
from duocall.rtc.call_session import CallCallbacks, CallSession
from duocall.rtc.negotiation import NegotiationState
from duocall.server.app import SignalingServer
from duocall.server.relay import PeerConnection


@pytest_asyncio.fixture
async def server():
    srv = SignalingServer()
    yield srv
    for conn_id in list(srv.relay._connections):
        await srv.relay.detach(conn_id).close()


def _attach(srv: SignalingServer, conn_id: str) -> FakeSocket:
    sock = FakeSocket()
    conn = PeerConnection(conn_id, sock.send)
    srv.relay.attach(conn)
    conn.start()
    return sock


@pytest.mark.asyncio
async def test_dispatch_drops_bad_frames(server):
    a = _attach(server, "a")
    b = _attach(server, "b")
    await server.dispatch("a", protocol.encode(protocol.make_join("r1", "Ann")))
    await server.dispatch("b", protocol.encode(protocol.make_join("r1", "Bob")))

    for raw in ("not json", "[]", '{"type":"nope"}', '{"type":"welcome","participant_id":"z"}', '{"type":"offer","room":7}'):
        await server.dispatch("a", raw)
    await server.dispatch("a", protocol.encode(protocol.make_user_disconnected("b")))
    await settle()

    assert server.registry.is_member("r1", "b")
    assert b.types() == ["room-users"]
    assert a.types() == ["room-users", "user-connected"]


@pytest.mark.asyncio
async def test_payloads_are_forwarded_whatever_their_shape(server):
    _attach(server, "a")
    b = _attach(server, "b")
    await server.dispatch("a", protocol.encode(protocol.make_join("r1", "Ann")))
    await server.dispatch("b", protocol.encode(protocol.make_join("r1", "Bob")))

    odd = [
        {"type": "ice-candidate", "candidate": "candidate:1 1 udp 2122260223 10.0.0.1 50001 typ host"},
        {"type": "toggle-hand", "raised": 1},
        {"type": "offer", "room": "r1", "description": {"sdp": "v=0"}, "extra": [1, {"x": None}]},
        {"type": "reaction", "emoji": ""},
        {"type": "chat-message", "from": "spoof"},
    ]
    for frame in odd:
        await server.dispatch("a", protocol.encode(frame))
    await settle()

    assert b.sent[1:] == [dict(frame, **{"from": "a"}) for frame in odd]


@pytest.mark.asyncio
async def test_transport_close_leaves_room(server):
    _attach(server, "a")
    b = _attach(server, "b")
    await server.dispatch("a", protocol.encode(protocol.make_join("r1", "Ann")))
    await server.dispatch("b", protocol.encode(protocol.make_join("r1", "Bob")))

    await server.handle("a", protocol.Disconnect(participant_id="a", sender="a"))
    await settle()

    assert b.of_type("user-disconnected") == [{"type": "user-disconnected", "participant_id": "a"}]
    assert server.registry.members("r1")[0].connection_id == "b"


class _Client:
    def __init__(self, url: str, name: str, *, supports_ice_restart: bool = True, callbacks: CallCallbacks = None):
        self.transports = []

        def factory(transport_callbacks):
            transport = FakeTransport(transport_callbacks, supports_ice_restart=supports_ice_restart)
            self.transports.append(transport)
            return transport

        self.session = CallSession(
            SignalingClient(url),
            FakeMediaDevices(),
            name=name,
            transport_factory=factory,
            reaction_seconds=0.2,
            callbacks=callbacks,
        )

    @property
    def transport(self) -> FakeTransport:
        return self.transports[-1]


@pytest_asyncio.fixture
async def live_url():
    srv = SignalingServer()
    async with websockets.serve(srv.handler, "127.0.0.1", 0) as ws_server:
        port = list(ws_server.sockets)[0].getsockname()[1]
        yield f"ws://127.0.0.1:{port}", srv


@pytest.mark.asyncio
async def test_two_clients_negotiate_and_exchange_presence(live_url):
    live_url, srv = live_url
    x = _Client(live_url, "Xan")
    y = _Client(live_url, "Yui")
    try:
        assert await x.session.join("abc12345")
        x_id = x.session.signaling.participant_id
        await wait_until(lambda: srv.registry.is_member("abc12345", x_id))
        assert await y.session.join("abc12345")

        # X was there first: it hears user-connected and offers; Y answers.
        await wait_until(lambda: x.session.state is NegotiationState.STABLE)
        await wait_until(lambda: y.session.state is NegotiationState.ANSWER_SENT)
        await y.transport.report_state("connected")
        assert y.session.state is NegotiationState.STABLE

        assert x.session.remote_name == "Yui"
        assert y.session.remote_name == "Xan"
        assert len(x.transport.offers) == 1 and x.transport.answers == []
        assert len(y.transport.answers) == 1 and y.transport.offers == []
        assert x.transport.remote_description == y.transport.answers[0]

        y_id = y.session.signaling.participant_id
        await y.session.send_reaction("👍")
        await wait_until(lambda: any(r.emoji == "👍" for r in x.session.presence.reactions))
        assert x.session.presence.reactions[0].participant_id == y_id
        await wait_until(lambda: not x.session.presence.reactions)

        # Screen sharing swaps the track without another offer/answer.
        assert await y.session.toggle_screen_share() is True
        assert await y.session.toggle_screen_share() is False
        assert len(x.transport.offers) == 1 and len(y.transport.answers) == 1

        await y.session.toggle_hand()
        await wait_until(lambda: x.session.presence.remote_hand)

        # X hangs up: Y drops remote state and keeps its own media.
        assert x.session.remote_tracks
        assert y.session.remote_tracks
        first_transport = y.transport
        await x.session.leave()
        await wait_until(lambda: len(y.transports) == 2)

        assert y.session.remote_tracks == {}
        assert y.session.remote_name is None
        assert y.session.remote_id is None
        assert y.session.presence.remote_hand is False
        assert first_transport.closed
        assert y.session.state is NegotiationState.IDLE
        assert y.session.media.audio_track is not None
        assert y.session.room == "abc12345"
        assert x.session.media.video_track is None
        assert x.transports[0].closed
    finally:
        await x.session.leave()
        await y.session.leave()


@pytest.mark.asyncio
async def test_blank_room_is_rejected_locally(live_url):
    client = _Client(live_url[0], "Ann")
    with pytest.raises(ValueError):
        await client.session.join("   ")
    assert not client.session.signaling.is_connected


@pytest.mark.asyncio
async def test_receiving_client_skips_malformed_payloads(live_url):
    url, srv = live_url
    a = SignalingClient(url)
    b = SignalingClient(url, SignalingCallbacks(on_hand=AsyncMock(), on_error=AsyncMock()))
    try:
        for client in (a, b):
            assert await client.connect()
            assert await client.wait_welcome()
        await a.join("r1", "Ann")
        await b.join("r1", "Bob")
        await wait_until(lambda: len(srv.registry.members("r1")) == 2)

        await a.send({"type": "toggle-hand", "raised": 1})
        await a.send(protocol.make_toggle_hand(True))
        await wait_until(lambda: b.callbacks.on_hand.await_count == 1)

        b.callbacks.on_error.assert_awaited_once()
        code, payload = b.callbacks.on_error.await_args.args
        assert code.startswith("missing field 'raised'")
        assert b.callbacks.on_hand.await_args.args[0].sender == a.participant_id
        assert b.is_connected
    finally:
        await a.disconnect()
        await b.disconnect()


async def _connected_pair(srv, url, room, **kwargs):
    x = _Client(url, "Xan", **kwargs)
    y = _Client(url, "Yui", **kwargs)
    assert await x.session.join(room)
    x_id = x.session.signaling.participant_id
    await wait_until(lambda: srv.registry.is_member(room, x_id))
    assert await y.session.join(room)
    await wait_until(lambda: y.session.state is NegotiationState.ANSWER_SENT)
    await y.transport.report_state("connected")
    await wait_until(lambda: x.session.state is NegotiationState.STABLE)
    return x, y


@pytest.mark.asyncio
async def test_failed_connectivity_without_restart_rejoins_and_recovers(live_url):
    url, srv = live_url
    x, y = await _connected_pair(srv, url, "r1", supports_ice_restart=False)
    try:
        # The offering side rejoins; the side that stayed calls it again, so
        # the roles swap every round.
        offerer, stayer = x, y
        for _ in range(3):
            old_id = offerer.session.signaling.participant_id
            audio = offerer.session.media.audio_track
            stayer_sessions = len(stayer.transports)

            await offerer.transport.report_state("failed")

            await wait_until(
                lambda: len(stayer.transports) == stayer_sessions + 1
                and stayer.session.state is NegotiationState.STABLE
            )
            await wait_until(lambda: offerer.session.state is NegotiationState.ANSWER_SENT)
            await wait_until(lambda: not srv.registry.is_member("r1", old_id))

            new_id = offerer.session.signaling.participant_id
            assert new_id and new_id != old_id
            assert stayer.session.remote_id == new_id
            assert stayer.session.remote_name == offerer.session.name
            assert offerer.session.remote_name == stayer.session.name
            assert offerer.session.media.audio_track is audio
            assert offerer.transports[-2].closed
            assert stayer.transports[-2].closed
            assert stayer.session.engine.role == "offerer"

            await offerer.transport.report_state("connected")
            assert offerer.session.state is NegotiationState.STABLE
            offerer, stayer = stayer, offerer
    finally:
        await x.session.leave()
        await y.session.leave()


@pytest.mark.asyncio
async def test_peer_announced_mid_call_is_called_after_current_peer_leaves(live_url):
    url, srv = live_url
    x, y = await _connected_pair(srv, url, "r2")
    z = _Client(url, "Zed")
    try:
        x_id = x.session.signaling.participant_id
        assert await z.session.join("r2")
        await wait_until(lambda: len(srv.registry.members("r2")) == 3)
        await settle()

        # Busy with X: Z is not offered to and X stays the remote peer.
        assert y.session.remote_id == x_id
        assert y.session.remote_name == "Xan"
        assert len(y.transport.offers) == 0

        await x.session.leave()

        await wait_until(lambda: z.session.state is NegotiationState.ANSWER_SENT)
        await wait_until(lambda: y.session.state is NegotiationState.STABLE and len(y.transports) == 2)
        assert y.session.remote_id == z.session.signaling.participant_id
        assert y.session.remote_name == "Zed"
        assert z.session.remote_name == "Yui"
        assert len(y.transport.offers) == 1
    finally:
        for client in (x, y, z):
            await client.session.leave()


@pytest.mark.asyncio
async def test_lost_signaling_ends_the_call():
    srv = SignalingServer()
    on_closed = AsyncMock()
    async with websockets.serve(srv.handler, "127.0.0.1", 0) as ws_server:
        port = list(ws_server.sockets)[0].getsockname()[1]
        client = _Client(f"ws://127.0.0.1:{port}", "Ann", callbacks=CallCallbacks(on_closed=on_closed))
        assert await client.session.join("r1")

        ws_server.close()
        await ws_server.wait_closed()
        await wait_until(lambda: on_closed.await_count == 1)

    assert client.session.room is None
    assert client.session.media.audio_track is None
    assert client.transports[0].closed
    assert not client.session.signaling.is_connected
