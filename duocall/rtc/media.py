"""Local media for a call.

Scope:
- Acquire camera, microphone and screen capture through ffmpeg (aiortc MediaPlayer).
- Mute / camera-off by blanking frames on the outgoing track instead of removing it.
- Swap the outgoing video between camera and screen on the live session.
"""

from __future__ import annotations

import asyncio
import logging
import platform
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Tuple

import av
import numpy as np
from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer

from ..config import DeviceSpec


logger = logging.getLogger(__name__)


AsyncCallback = Callable[..., Awaitable[None]]


class MediaAcquisitionError(Exception):
	"""A capture source could not be opened. Reported locally only."""


def _blank_video_frame(frame: av.VideoFrame) -> av.VideoFrame:
	blank = av.VideoFrame.from_ndarray(np.zeros((frame.height, frame.width, 3), dtype=np.uint8), format="rgb24")
	blank.pts = frame.pts
	if frame.time_base is not None:
		blank.time_base = frame.time_base
	return blank


def _silent_audio_frame(frame: av.AudioFrame) -> av.AudioFrame:
	samples = frame.to_ndarray()
	silent = av.AudioFrame.from_ndarray(np.zeros_like(samples), format=frame.format.name, layout=frame.layout.name)
	silent.sample_rate = frame.sample_rate
	silent.pts = frame.pts
	if frame.time_base is not None:
		silent.time_base = frame.time_base
	return silent


class SwitchableTrack(MediaStreamTrack):
	"""Pass-through track with an ``enabled`` flag.

	While disabled the track keeps producing frames at the source's pace, but
	they are black (video) or silent (audio), so the remote side keeps a live
	track and nothing is renegotiated.
	"""

	def __init__(self, source: MediaStreamTrack):
		super().__init__()
		self.kind = source.kind
		self.source = source
		self.enabled = True

	async def recv(self):  # type: ignore[override]
		frame = await self.source.recv()
		if self.enabled:
			return frame
		if isinstance(frame, av.VideoFrame):
			return _blank_video_frame(frame)
		if isinstance(frame, av.AudioFrame):
			return _silent_audio_frame(frame)
		return frame

	def stop(self) -> None:  # type: ignore[override]
		try:
			self.source.stop()
		finally:
			super().stop()


@dataclass
class Capture:
	"""Owns the underlying media player so its track stays alive."""

	track: Optional[MediaStreamTrack]
	player: Optional[Any] = None
	label: str = ""

	def close(self) -> None:
		t = self.track
		self.track = None
		self.player = None
		if t is not None:
			# Stopping the last track also stops the player's decode thread.
			t.stop()


def _platform_defaults(kind: str) -> List[Tuple[str, str, dict]]:
	system = platform.system()
	if kind == "camera":
		if system == "Linux":
			return [("v4l2", "/dev/video0", {"video_size": "640x480"})]
		if system == "Darwin":
			return [("avfoundation", "default:none", {"framerate": "30", "video_size": "640x480"})]
		return []
	if kind == "microphone":
		if system == "Linux":
			return [("pulse", "default", {}), ("alsa", "default", {})]
		if system == "Darwin":
			return [("avfoundation", "none:default", {})]
		return []
	if kind == "screen":
		if system == "Linux":
			return [("x11grab", ":0.0", {"framerate": "15"})]
		if system == "Darwin":
			return [("avfoundation", "Capture screen 0:none", {"framerate": "15"})]
		if system == "Windows":
			return [("gdigrab", "desktop", {"framerate": "15"})]
	return []


class MediaDevices:
	"""Opens capture sources, trying the configured device first."""

	def __init__(
		self,
		*,
		camera: Optional[DeviceSpec] = None,
		microphone: Optional[DeviceSpec] = None,
		screen: Optional[DeviceSpec] = None,
	):
		self._preferred = {"camera": camera, "microphone": microphone, "screen": screen}

	def open_camera(self) -> Capture:
		return self._open("camera", "video")

	def open_microphone(self) -> Capture:
		return self._open("microphone", "audio")

	def open_screen(self) -> Capture:
		return self._open("screen", "video")

	def _open(self, kind: str, track_kind: str) -> Capture:
		attempts: List[Tuple[Optional[str], str, dict]] = []
		preferred = self._preferred.get(kind)
		if preferred is not None:
			attempts.append((preferred.format, preferred.device, {}))
		attempts.extend(_platform_defaults(kind))

		errors = []
		for fmt, device, options in attempts:
			try:
				player = MediaPlayer(device, format=fmt, options=options or None)
			except Exception as e:
				errors.append(f"{fmt}:{device}: {e}")
				continue
			track = player.video if track_kind == "video" else player.audio
			if track is None:
				errors.append(f"{fmt}:{device}: no {track_kind} stream")
				for other in (player.audio, player.video):
					if other is not None:
						other.stop()
				continue
			logger.info("media %s opened format=%s device=%s", kind, fmt, device)
			return Capture(track=track, player=player, label=f"{fmt}:{device}")

		if not attempts:
			errors.append(f"no {kind} device configured for {platform.system()}")
		raise MediaAcquisitionError(f"could not open {kind}: " + "; ".join(errors))


@dataclass
class MediaCallbacks:
	on_preview: Optional[AsyncCallback] = None  # (track: MediaStreamTrack | None)
	on_share_state: Optional[AsyncCallback] = None  # (sharing: bool)


class MediaTrackController:
	"""Local outgoing tracks of one client.

	Screen sharing swaps the outgoing video track on the live session
	(``replace_outgoing_track``); it never creates an offer.
	"""

	def __init__(self, devices: Any, callbacks: Optional[MediaCallbacks] = None):
		self._devices = devices
		self._callbacks = callbacks or MediaCallbacks()
		self._transport: Optional[Any] = None

		self._mic: Optional[Capture] = None
		self._camera: Optional[Capture] = None
		self._screen: Optional[Capture] = None
		self.audio_track: Optional[SwitchableTrack] = None
		self.video_track: Optional[SwitchableTrack] = None
		self.preview: Optional[MediaStreamTrack] = None

		self.mic_on = True
		self.camera_on = True
		self.errors: List[str] = []

	@property
	def sharing(self) -> bool:
		return self._screen is not None

	@property
	def outgoing_video(self) -> Optional[MediaStreamTrack]:
		if self._screen is not None and self._screen.track is not None:
			return self._screen.track
		return self.video_track

	def acquire(self, *, audio: bool = True, video: bool = True) -> List[str]:
		"""Open microphone and camera. Failures are recorded, not raised.

		Returns the error messages so the caller can show them; a call can go
		ahead with whatever was acquired.
		"""

		self.errors = []
		if audio and self._mic is None:
			try:
				self._mic = self._devices.open_microphone()
				self.audio_track = SwitchableTrack(self._mic.track)
				self.audio_track.enabled = self.mic_on
			except MediaAcquisitionError as e:
				logger.warning("media microphone unavailable: %s", e)
				self.errors.append(str(e))
		if video and self._camera is None:
			try:
				self._camera = self._devices.open_camera()
				self.video_track = SwitchableTrack(self._camera.track)
				self.video_track.enabled = self.camera_on
				self.preview = self.video_track
			except MediaAcquisitionError as e:
				logger.warning("media camera unavailable: %s", e)
				self.errors.append(str(e))
		return list(self.errors)

	def attach(self, transport: Optional[Any]) -> None:
		"""Point track replacement at the current session (None when not in a call)."""
		self._transport = transport

	def toggle_mic(self) -> bool:
		if self.audio_track is None:
			return self.mic_on
		self.mic_on = not self.mic_on
		self.audio_track.enabled = self.mic_on
		logger.info("media mic on=%s", self.mic_on)
		return self.mic_on

	def toggle_camera(self) -> bool:
		if self.video_track is None:
			return self.camera_on
		if self.sharing:
			logger.debug("media camera toggle ignored while sharing")
			return self.camera_on
		self.camera_on = not self.camera_on
		self.video_track.enabled = self.camera_on
		logger.info("media camera on=%s", self.camera_on)
		return self.camera_on

	async def start_share(self) -> bool:
		"""Replace the outgoing camera with a screen capture.

		Raises MediaAcquisitionError when the screen cannot be captured.
		Returns False when there is no session or no video sender to swap.
		"""

		if self.sharing:
			return True
		if self._transport is None:
			logger.debug("media share ignored, not in a call")
			return False

		capture = self._devices.open_screen()
		screen_track = capture.track
		try:
			await self._transport.replace_outgoing_track("video", screen_track)
		except LookupError:
			logger.warning("media share needs an outgoing video track")
			capture.close()
			return False
		except Exception:
			capture.close()
			raise

		self._screen = capture

		def _on_ended() -> None:
			# Platform-driven stop takes the same path as an explicit toggle.
			if self._screen is capture:
				logger.info("media screen capture ended by platform")
				asyncio.ensure_future(self.stop_share())

		screen_track.on("ended", _on_ended)

		await self._set_preview(screen_track)
		logger.info("media share started source=%s", capture.label)
		if self._callbacks.on_share_state:
			await self._callbacks.on_share_state(True)
		return True

	async def stop_share(self) -> None:
		capture = self._screen
		if capture is None:
			return
		self._screen = None

		if self.video_track is not None:
			self.video_track.enabled = self.camera_on
		if self._transport is not None:
			try:
				await self._transport.replace_outgoing_track("video", self.video_track)
			except LookupError:
				logger.debug("media no video sender to restore")
		capture.close()

		await self._set_preview(self.video_track)
		logger.info("media share stopped camera_on=%s", self.camera_on)
		if self._callbacks.on_share_state:
			await self._callbacks.on_share_state(False)

	def release(self) -> None:
		"""Stop every capture. Safe to call more than once."""
		for capture in (self._screen, self._camera, self._mic):
			if capture is None:
				continue
			try:
				capture.close()
			except Exception:
				logger.exception("media release failed label=%s", capture.label)
		for track in (self.video_track, self.audio_track):
			if track is not None:
				track.stop()
		self._screen = None
		self._camera = None
		self._mic = None
		self.video_track = None
		self.audio_track = None
		self.preview = None
		self._transport = None
		self.mic_on = True
		self.camera_on = True
		logger.info("media released")

	async def _set_preview(self, track: Optional[MediaStreamTrack]) -> None:
		self.preview = track
		if self._callbacks.on_preview:
			await self._callbacks.on_preview(track)
