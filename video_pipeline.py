# Video Ingestion & Decode Pipeline
# File: video_pipeline.py

"""
Per-drone live video: stream lifecycle, frame validation and feeding.

Frames are handled strictly in arrival order. The feed is lossy: a frame
that arrives while the decoder is not ready is dropped, never queued.
"""

import base64
import binascii
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import config
from h264_decoder import FrameBufferSurface, create_decoder
from transport import DroneCommand, TransportChannel, build_drone_command

logger = logging.getLogger(__name__)

START_CODE_LONG = b'\x00\x00\x00\x01'
START_CODE_SHORT = b'\x00\x00\x01'


class DropReason(str, Enum):
    EMPTY = "empty"
    ALL_ZERO = "all_zero"
    UNDECODABLE = "undecodable"
    INVALID_START_CODE = "invalid_start_code"
    DECODER_NOT_READY = "decoder_not_ready"
    STALE = "stale"


def decode_payload(payload: Any) -> Optional[bytes]:
    """
    Turn a frame payload into raw bytes.

    Supports base64 text (optionally as a data URL), bytes-like objects,
    lists of byte values and {'type': 'Buffer', 'data': [...]} objects.
    Returns None when the payload cannot be decoded.
    """
    if isinstance(payload, (bytes, bytearray, memoryview)):
        return bytes(payload)

    if isinstance(payload, str):
        text = payload.strip()
        if text.startswith('data:') and ',' in text:
            text = text.split(',', 1)[1]
        try:
            return base64.b64decode(text, validate=True)
        except (binascii.Error, ValueError):
            return None

    if isinstance(payload, dict) and payload.get('type') == 'Buffer':
        payload = payload.get('data')

    if isinstance(payload, list):
        try:
            return bytes(payload)
        except (TypeError, ValueError):
            return None

    return None


def has_start_code(data: bytes) -> bool:
    return data.startswith(START_CODE_LONG) or data.startswith(START_CODE_SHORT)


def is_all_zero(data: bytes) -> bool:
    return not any(data)


@dataclass
class StreamStats:
    frames_received: int = 0
    frames_fed: int = 0
    dropped: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    started_at: datetime = field(default_factory=datetime.now)
    last_frame_at: Optional[datetime] = None

    def to_dict(self) -> Dict:
        return {
            'frames_received': self.frames_received,
            'frames_fed': self.frames_fed,
            'dropped': dict(self.dropped),
            'started_at': self.started_at.isoformat(),
            'last_frame_at': self.last_frame_at.isoformat() if self.last_frame_at else None,
        }


@dataclass
class VideoStream:
    """One drone's open video sub-stream"""
    drone_id: str
    surface: Any
    decoder: Any = None
    stats: StreamStats = field(default_factory=StreamStats)
    active: bool = True
    validated_frames: int = 0
    zero_frame_logged: bool = False
    first_frame_logged: bool = False
    resume_attempted: bool = False


class VideoPipeline:
    """Opens, feeds and tears down per-drone video streams"""

    def __init__(self, channel: TransportChannel,
                 decoder_factory: Callable[[Any], Any] = create_decoder,
                 surface_factory: Callable[[str], Any] = FrameBufferSurface,
                 metrics=None):
        self.channel = channel
        self.decoder_factory = decoder_factory
        self.surface_factory = surface_factory
        self.metrics = metrics
        self.streams: Dict[str, VideoStream] = {}
        self.lock = threading.Lock()
        self._unsubscribe = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, drone_id: str, surface: Any = None) -> VideoStream:
        """
        Open a video stream for a drone.

        Sends start_video_stream and binds a decoder to the surface.
        Starting an already open stream returns the existing one.
        """
        with self.lock:
            existing = self.streams.get(drone_id)
            if existing is not None:
                return existing

            stream = VideoStream(
                drone_id=drone_id,
                surface=surface if surface is not None else self.surface_factory(drone_id),
            )
            self.streams[drone_id] = stream

            # one frame subscription shared by all open streams
            if self._unsubscribe is None:
                self._unsubscribe = self.channel.subscribe(config.SUBJECT_VIDEO_FRAME, self.handle_frame)

        self.channel.send(build_drone_command(drone_id, DroneCommand.START_VIDEO_STREAM))

        try:
            stream.decoder = self.decoder_factory(stream.surface)
        except Exception as e:
            # The stream stays open; frames are dropped until it is restarted
            logger.error(f"Failed to initialize decoder for {drone_id}: {e}")

        logger.info(f"Video stream started for {drone_id}")
        return stream

    def stop(self, drone_id: str) -> bool:
        """
        Close a drone's video stream. Safe to call repeatedly and for
        streams whose decoder never initialized.

        Returns:
            True if a stream was open
        """
        with self.lock:
            stream = self.streams.pop(drone_id, None)
            if stream is None:
                return False
            stream.active = False
            if not self.streams and self._unsubscribe is not None:
                self._unsubscribe()
                self._unsubscribe = None

        self.channel.send(build_drone_command(drone_id, DroneCommand.STOP_VIDEO_STREAM))

        if stream.decoder is not None:
            try:
                stream.decoder.close()
            except Exception as e:
                logger.warning(f"Decoder teardown failed for {drone_id}: {e}")

        try:
            stream.surface.release()
        except Exception as e:
            logger.warning(f"Surface release failed for {drone_id}: {e}")

        logger.info(f"Video stream stopped for {drone_id}: {stream.stats.to_dict()}")
        return True

    def stop_all(self):
        for drone_id in list(self.streams.keys()):
            self.stop(drone_id)

    # ------------------------------------------------------------------
    # Frames
    # ------------------------------------------------------------------

    def handle_frame(self, event: Dict[str, Any]) -> bool:
        """
        Validate one inbound frame event and feed it to its stream.

        Returns:
            True if the frame was fed to the decoder
        """
        if not isinstance(event, dict):
            return False

        drone_id = event.get('droneId', event.get('drone_id'))
        drone_id = str(drone_id) if drone_id is not None else None

        with self.lock:
            stream = self.streams.get(drone_id)

        if stream is None or not stream.active:
            self._drop(None, drone_id, DropReason.STALE)
            return False

        stream.stats.frames_received += 1
        stream.stats.last_frame_at = datetime.now()

        raw = event.get('payload', event.get('frame', event.get('data')))
        data = decode_payload(raw)

        if data is None:
            return self._drop(stream, drone_id, DropReason.UNDECODABLE)

        if not data:
            return self._drop(stream, drone_id, DropReason.EMPTY)

        if is_all_zero(data):
            if not stream.zero_frame_logged:
                stream.zero_frame_logged = True
                logger.warning(f"All-zero video frame for {drone_id}, dropping")
            return self._drop(stream, drone_id, DropReason.ALL_ZERO)

        if not stream.first_frame_logged:
            stream.first_frame_logged = True
            logger.info(f"First video frame for {drone_id}: {len(data)} bytes, "
                        f"head={data[:16].hex()}")

        stream.validated_frames += 1
        if not has_start_code(data):
            if stream.validated_frames > config.H264_TOLERANCE_FRAMES:
                return self._drop(stream, drone_id, DropReason.INVALID_START_CODE)
            logger.warning(f"Frame {stream.validated_frames} for {drone_id} has no "
                           f"Annex-B start code, feeding anyway")

        decoder = stream.decoder
        if decoder is None or not decoder.is_ready:
            return self._drop(stream, drone_id, DropReason.DECODER_NOT_READY)

        if not stream.active:
            return self._drop(stream, drone_id, DropReason.STALE)

        if not decoder.feed(data):
            return self._drop(stream, drone_id, DropReason.DECODER_NOT_READY)

        stream.stats.frames_fed += 1
        if self.metrics is not None:
            self.metrics.record_counter('video_frames_fed_total')

        if not stream.resume_attempted:
            stream.resume_attempted = True
            self._resume(stream)

        return True

    def _resume(self, stream: VideoStream):
        if not getattr(stream.surface, 'paused', False):
            return
        try:
            stream.surface.play()
            logger.info(f"Playback resumed for {stream.drone_id}")
        except Exception as e:
            logger.warning(f"Could not resume playback for {stream.drone_id}: {e}")

    def _drop(self, stream: Optional[VideoStream], drone_id: Optional[str],
              reason: DropReason) -> bool:
        if stream is not None:
            stream.stats.dropped[reason.value] += 1
        if self.metrics is not None:
            self.metrics.record_counter('video_frames_dropped_total', labels={'reason': reason.value})
        logger.debug(f"Dropped video frame for {drone_id}: {reason.value}")
        return False

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_streaming(self, drone_id: str) -> bool:
        return drone_id in self.streams

    def active_streams(self) -> List[str]:
        with self.lock:
            return list(self.streams.keys())

    def stats(self, drone_id: str) -> Optional[Dict]:
        stream = self.streams.get(drone_id)
        if stream is None:
            return None
        result = stream.stats.to_dict()
        result['drone_id'] = drone_id
        result['decoder_ready'] = bool(stream.decoder is not None and stream.decoder.is_ready)
        return result
