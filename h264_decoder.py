# H.264 Decoder
# File: h264_decoder.py

"""
Annex-B H.264 elementary stream decoding with PyAV.

Decoding runs on its own thread so that feeding a frame never blocks the
caller. The handoff queue is small and lossy: when the decoder falls
behind, new frames are refused instead of buffered.
"""

import logging
import queue
import threading
from typing import Any, Optional

import av

logger = logging.getLogger(__name__)


class FrameBufferSurface:
    """Playback surface that keeps the most recent decoded frame in memory"""

    def __init__(self, drone_id: Optional[str] = None):
        self.drone_id = drone_id
        self.paused = True
        self.released = False
        self.latest_frame: Any = None
        self.frames_rendered = 0
        self.lock = threading.Lock()

    def render(self, frame: Any):
        with self.lock:
            if self.released:
                return
            self.latest_frame = frame
            self.frames_rendered += 1

    def play(self):
        if self.released:
            raise RuntimeError(f"surface for {self.drone_id} was released")
        self.paused = False

    def pause(self):
        self.paused = True

    def release(self):
        with self.lock:
            self.released = True
            self.paused = True
            self.latest_frame = None

    def info(self) -> dict:
        frame = self.latest_frame
        return {
            'drone_id': self.drone_id,
            'paused': self.paused,
            'released': self.released,
            'frames_rendered': self.frames_rendered,
            'width': getattr(frame, 'width', None),
            'height': getattr(frame, 'height', None),
        }


class H264Decoder:
    """PyAV decoder bound to a playback surface"""

    def __init__(self, surface: FrameBufferSurface, queue_size: int = 8):
        self.surface = surface
        self._queue = queue.Queue(maxsize=queue_size)
        self._ready = threading.Event()
        self._closed = threading.Event()
        self._thread = threading.Thread(target=self._run, daemon=True)
        self.frames_decoded = 0
        self.errors = 0

    def start(self) -> "H264Decoder":
        self._thread.start()
        return self

    @property
    def is_ready(self) -> bool:
        return self._ready.is_set() and not self._closed.is_set()

    def feed(self, data: bytes) -> bool:
        """Hand one access unit to the decode thread without waiting"""
        if not self.is_ready:
            return False
        try:
            self._queue.put_nowait(bytes(data))
        except queue.Full:
            return False
        return True

    def close(self):
        """Stop decoding and discard frames still waiting. Safe to call twice."""
        if self._closed.is_set():
            return
        self._closed.set()

        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                break

        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout=2)

    def _run(self):
        try:
            codec = av.CodecContext.create('h264', 'r')
        except av.error.FFmpegError as e:
            logger.error(f"Failed to create H.264 decoder: {e}")
            return

        self._ready.set()
        logger.info(f"H.264 decoder ready for {self.surface.drone_id}")

        while not self._closed.is_set():
            try:
                data = self._queue.get(timeout=0.1)
            except queue.Empty:
                continue
            self._decode(codec, data)

        logger.info(f"H.264 decoder closed for {self.surface.drone_id} "
                    f"({self.frames_decoded} frames decoded)")

    def _decode(self, codec, data: bytes):
        try:
            for packet in codec.parse(data):
                for frame in codec.decode(packet):
                    if self._closed.is_set():
                        return
                    self.surface.render(frame)
                    self.frames_decoded += 1
        except av.error.FFmpegError as e:
            self.errors += 1
            logger.debug(f"Decode error for {self.surface.drone_id}: {e}")


def create_decoder(surface: FrameBufferSurface) -> H264Decoder:
    return H264Decoder(surface).start()
