"""Runtime configuration read from the environment.

CLI flags in ``main.py`` default to these values, so the environment is the
base layer and the command line overrides it.
"""

from __future__ import annotations

import os
import uuid
from dataclasses import dataclass
from typing import Optional


DEFAULT_STUN_URLS = ("stun:stun.l.google.com:19302", "stun:stun1.l.google.com:19302")


def _env_str(name: str, default: str) -> str:
	v = os.environ.get(name)
	if v is None:
		return default
	return v.strip()


def _env_int(name: str, default: int) -> int:
	v = os.environ.get(name)
	if v is None:
		return default
	try:
		return int(v)
	except ValueError:
		return default


def _env_float(name: str, default: float) -> float:
	v = os.environ.get(name)
	if v is None:
		return default
	try:
		return float(v)
	except ValueError:
		return default


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
	v = os.environ.get(name)
	if v is None:
		return default
	return tuple(p.strip() for p in v.split(",") if p.strip())


def generate_room_id() -> str:
	"""Random 8-character room token; uniqueness is left to its entropy."""
	return uuid.uuid4().hex[:8]


@dataclass
class DeviceSpec:
	"""An ffmpeg input for MediaPlayer, written as ``format:device``.

	``v4l2:/dev/video0`` or ``x11grab::0.0`` (the device part may itself
	contain colons).
	"""

	format: Optional[str]
	device: str

	@classmethod
	def parse(cls, value: str) -> Optional["DeviceSpec"]:
		value = value.strip()
		if not value:
			return None
		fmt, sep, device = value.partition(":")
		if not sep:
			return cls(format=None, device=value)
		return cls(format=fmt or None, device=device)


@dataclass
class ServerConfig:
	host: str = "0.0.0.0"
	port: int = 3001
	outbound_queue: int = 256

	@classmethod
	def from_env(cls) -> "ServerConfig":
		return cls(
			host=_env_str("DUOCALL_HOST", cls.host),
			port=_env_int("DUOCALL_PORT", cls.port),
			outbound_queue=_env_int("DUOCALL_OUTBOUND_QUEUE", cls.outbound_queue),
		)


@dataclass
class ClientConfig:
	server_url: str = "ws://127.0.0.1:3001"
	room: str = ""
	name: str = ""
	stun_urls: tuple[str, ...] = DEFAULT_STUN_URLS
	reaction_seconds: float = 3.0
	camera: Optional[DeviceSpec] = None
	microphone: Optional[DeviceSpec] = None
	screen: Optional[DeviceSpec] = None

	@classmethod
	def from_env(cls) -> "ClientConfig":
		return cls(
			server_url=_env_str("DUOCALL_SERVER_URL", cls.server_url),
			room=_env_str("DUOCALL_ROOM", ""),
			name=_env_str("DUOCALL_NAME", os.environ.get("USER", "")),
			stun_urls=_env_list("DUOCALL_STUN_URLS", DEFAULT_STUN_URLS),
			reaction_seconds=_env_float("DUOCALL_REACTION_SECONDS", cls.reaction_seconds),
			camera=DeviceSpec.parse(_env_str("DUOCALL_CAMERA", "")),
			microphone=DeviceSpec.parse(_env_str("DUOCALL_MICROPHONE", "")),
			screen=DeviceSpec.parse(_env_str("DUOCALL_SCREEN", "")),
		)
