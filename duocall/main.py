from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
import threading

from .config import ClientConfig, DeviceSpec, ServerConfig, generate_room_id
from .logging_config import setup_logging


logger = logging.getLogger(__name__)


CONSOLE_HELP = "commands: /mic /cam /share /hand /react <emoji> /quit; anything else is sent as chat"


def _install_stop(stop: asyncio.Future) -> None:
	loop = asyncio.get_running_loop()
	for sig in (signal.SIGINT, signal.SIGTERM):
		try:
			loop.add_signal_handler(sig, lambda: stop.done() or stop.set_result(None))
		except (NotImplementedError, RuntimeError):
			# Windows event loops have no signal handlers; Ctrl+C raises KeyboardInterrupt instead.
			pass


async def run_server(cfg: ServerConfig) -> None:
	from .server.app import SignalingServer

	stop = asyncio.get_running_loop().create_future()
	_install_stop(stop)
	await SignalingServer(cfg).serve(stop)


async def _console(session, stop: asyncio.Future) -> None:
	from .rtc.media import MediaAcquisitionError

	loop = asyncio.get_running_loop()
	lines: asyncio.Queue[str] = asyncio.Queue()

	def _read_stdin() -> None:
		# Daemon thread: a pending readline must not hold up interpreter exit.
		for raw in sys.stdin:
			loop.call_soon_threadsafe(lines.put_nowait, raw)
		loop.call_soon_threadsafe(lines.put_nowait, "")

	threading.Thread(target=_read_stdin, name="console-stdin", daemon=True).start()
	print(CONSOLE_HELP)
	while not stop.done():
		line = await lines.get()
		if not line:
			break
		line = line.strip()
		if line == "/quit":
			break
		if line == "/mic":
			print(f"mic on={session.toggle_mic()}")
		elif line == "/cam":
			print(f"camera on={session.toggle_camera()}")
		elif line == "/share":
			try:
				print(f"sharing={await session.toggle_screen_share()}")
			except MediaAcquisitionError as e:
				print(f"screen share unavailable: {e}")
		elif line == "/hand":
			print(f"hand raised={await session.toggle_hand()}")
		elif line.startswith("/react "):
			await session.send_reaction(line[len("/react "):].strip())
		elif line:
			await session.send_chat(line)
	if not stop.done():
		stop.set_result(None)


async def run_client(cfg: ClientConfig) -> int:
	from .net.signaling_client import SignalingClient
	from .rtc.call_session import CallCallbacks, CallSession
	from .rtc.media import MediaDevices
	from .rtc.presence import PresenceCallbacks
	from .rtc.webrtc_peer import build_rtc_configuration

	async def on_log(message: str) -> None:
		logger.info("%s", message)

	async def on_remote_name(name) -> None:
		print(f"peer: {name or '(none)'}")

	async def on_remote_media(tracks) -> None:
		print(f"remote media: {', '.join(sorted(tracks)) or '(none)'}")

	async def on_media_error(errors) -> None:
		for err in errors:
			print(f"media error: {err}")

	async def on_chat(entry) -> None:
		print(f"<{entry.participant_id}> {entry.text}")

	async def on_reactions(reactions) -> None:
		print("reactions: " + " ".join(r.emoji for r in reactions))

	async def on_hand(participant_id, raised) -> None:
		print(f"hand {'raised' if raised else 'lowered'} by {participant_id}")

	stop = asyncio.get_running_loop().create_future()

	async def on_closed() -> None:
		print("signaling connection lost")
		if not stop.done():
			stop.set_result(None)

	room = cfg.room or generate_room_id()
	session = CallSession(
		SignalingClient(cfg.server_url),
		MediaDevices(camera=cfg.camera, microphone=cfg.microphone, screen=cfg.screen),
		name=cfg.name,
		rtc_config=build_rtc_configuration(cfg.stun_urls),
		reaction_seconds=cfg.reaction_seconds,
		callbacks=CallCallbacks(
			on_log=on_log,
			on_remote_name=on_remote_name,
			on_remote_media=on_remote_media,
			on_media_error=on_media_error,
			on_closed=on_closed,
		),
		presence_callbacks=PresenceCallbacks(on_chat=on_chat, on_reactions=on_reactions, on_hand=on_hand),
	)

	if not await session.join(room):
		print(f"could not join room {room} via {cfg.server_url}")
		return 1
	print(f"joined room {room} as {cfg.name or 'Guest'}")

	_install_stop(stop)
	console = asyncio.create_task(_console(session, stop), name="console")
	try:
		await stop
	finally:
		console.cancel()
		await session.leave()
	return 0


def main(argv: list[str] | None = None) -> int:
	parser = argparse.ArgumentParser(description="duocall 1:1 video call signaling and client")
	parser.add_argument(
		"--log-level",
		default=None,
		help="Logging level (debug, info, warning, error). Can also use DUOCALL_LOG_LEVEL.",
	)
	sub = parser.add_subparsers(dest="command", required=True)

	server_defaults = ServerConfig.from_env()
	serve = sub.add_parser("serve", help="Run the signaling relay")
	serve.add_argument("--host", default=server_defaults.host)
	serve.add_argument("--port", type=int, default=server_defaults.port)
	serve.add_argument(
		"--outbound-queue",
		type=int,
		default=server_defaults.outbound_queue,
		help="Max queued frames per connection (0 = unbounded)",
	)

	client_defaults = ClientConfig.from_env()
	join = sub.add_parser("join", help="Join a room as a headless client")
	join.add_argument("--server-url", default=client_defaults.server_url, help="WebSocket signaling URL")
	join.add_argument("--room", default=client_defaults.room, help="Room to join (empty: create a new one)")
	join.add_argument("--name", default=client_defaults.name, help="Display name")
	join.add_argument("--camera", default=None, help="ffmpeg camera input as format:device")
	join.add_argument("--microphone", default=None, help="ffmpeg microphone input as format:device")
	join.add_argument("--screen", default=None, help="ffmpeg screen input as format:device")
	join.add_argument("--reaction-seconds", type=float, default=client_defaults.reaction_seconds)

	args = parser.parse_args(argv)
	setup_logging(args.log_level)

	if args.command == "serve":
		cfg = ServerConfig(host=args.host, port=args.port, outbound_queue=args.outbound_queue)
		try:
			asyncio.run(run_server(cfg))
		except KeyboardInterrupt:
			pass
		return 0

	try:
		import aiortc  # noqa: F401
	except Exception as e:
		print(f"Failed to import WebRTC dependencies: {e}")
		print("Install client deps with: pip install duocall")
		return 2

	client_defaults.server_url = args.server_url
	client_defaults.room = args.room.strip()
	client_defaults.name = args.name
	client_defaults.reaction_seconds = args.reaction_seconds
	for attr in ("camera", "microphone", "screen"):
		value = getattr(args, attr)
		if value is not None:
			setattr(client_defaults, attr, DeviceSpec.parse(value))
	try:
		return asyncio.run(run_client(client_defaults))
	except KeyboardInterrupt:
		return 130


if __name__ == "__main__":
	raise SystemExit(main(sys.argv[1:]))
