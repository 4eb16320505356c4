# Video Ingestion Pipeline Tests
# File: test_video_pipeline.py

import base64
import logging
import threading

import pytest

import config
from conftest import FakeDecoder, FakeSurface
from monitoring import MetricsCollector
from transport import TransportChannel
from video_pipeline import DropReason, VideoPipeline, decode_payload, has_start_code

SPS_FRAME = bytes([0, 0, 0, 1, 0x67, 0x42, 0x00, 0x1e])
SLICE_FRAME = bytes([0, 0, 1, 0x65, 0x88, 0x84])
NO_START_CODE = bytes([0x09, 0x10, 0x00, 0x00])
ZERO_FRAME = bytes(10)


class Harness:
    def __init__(self, ready=True, fail_play=False):
        self.sent = []
        self.decoders = []
        self.channel = TransportChannel(sender=self.sent.append)
        self.channel.set_connected(True)
        self.metrics = MetricsCollector()
        self.ready = ready
        self.pipeline = VideoPipeline(
            self.channel,
            decoder_factory=self._make_decoder,
            surface_factory=lambda drone_id: FakeSurface(drone_id, fail_play=fail_play),
            metrics=self.metrics,
        )

    def _make_decoder(self, surface):
        decoder = FakeDecoder(surface, ready=self.ready)
        self.decoders.append(decoder)
        return decoder

    @property
    def decoder(self):
        return self.decoders[-1]

    def frame(self, payload, drone_id='D1'):
        return self.pipeline.handle_frame({'droneId': drone_id, 'payload': payload})

    def commands(self):
        return [(m['payload']['droneId'], m['payload']['command']) for m in self.sent]


@pytest.fixture
def harness():
    return Harness()


# ----------------------------------------------------------------------------
# Lifecycle
# ----------------------------------------------------------------------------

def test_start_sends_command_and_subscribes(harness):
    stream = harness.pipeline.start('D1')

    assert harness.commands() == [('D1', 'start_video_stream')]
    assert harness.channel.has_subscribers(config.SUBJECT_VIDEO_FRAME)
    assert stream.decoder is harness.decoder
    assert harness.pipeline.is_streaming('D1')


def test_start_twice_returns_same_stream(harness):
    first = harness.pipeline.start('D1')
    second = harness.pipeline.start('D1')

    assert first is second
    assert len(harness.decoders) == 1
    assert len(harness.sent) == 1


def test_stop_tears_down_and_is_idempotent(harness):
    stream = harness.pipeline.start('D1')

    assert harness.pipeline.stop('D1') is True
    assert harness.pipeline.stop('D1') is False

    assert harness.commands() == [('D1', 'start_video_stream'), ('D1', 'stop_video_stream')]
    assert harness.decoder.closed == 1
    assert stream.surface.released == 1
    assert not harness.channel.has_subscribers(config.SUBJECT_VIDEO_FRAME)


def test_subscription_kept_until_last_stream_stops(harness):
    harness.pipeline.start('D1')
    harness.pipeline.start('D2')
    harness.pipeline.stop('D1')

    assert harness.channel.has_subscribers(config.SUBJECT_VIDEO_FRAME)
    assert harness.pipeline.active_streams() == ['D2']

    harness.pipeline.stop_all()
    assert not harness.channel.has_subscribers(config.SUBJECT_VIDEO_FRAME)


def test_concurrent_starts_subscribe_once(harness):
    drone_ids = [f'D{i}' for i in range(8)]
    barrier = threading.Barrier(len(drone_ids))

    def start(drone_id):
        barrier.wait()
        harness.pipeline.start(drone_id)

    threads = [threading.Thread(target=start, args=(d,)) for d in drone_ids]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    assert sorted(harness.pipeline.active_streams()) == drone_ids
    assert len(harness.channel.handlers[config.SUBJECT_VIDEO_FRAME]) == 1

    delivered = harness.channel.dispatch(config.SUBJECT_VIDEO_FRAME, {'droneId': 'D0', 'payload': SPS_FRAME})
    assert delivered == 1
    assert harness.pipeline.streams['D0'].decoder.fed == [SPS_FRAME]


def test_stop_without_decoder(harness):
    def failing_factory(surface):
        raise RuntimeError("no codec")

    harness.pipeline.decoder_factory = failing_factory
    stream = harness.pipeline.start('D1')

    assert stream.decoder is None
    assert harness.frame(SPS_FRAME) is False
    assert stream.stats.dropped[DropReason.DECODER_NOT_READY.value] == 1
    assert harness.pipeline.stop('D1') is True


def test_frames_reach_pipeline_through_channel(harness):
    harness.pipeline.start('D1')

    harness.channel.dispatch(config.SUBJECT_VIDEO_FRAME, {'droneId': 'D1', 'payload': SPS_FRAME})

    assert harness.decoder.fed == [SPS_FRAME]


# ----------------------------------------------------------------------------
# Frame validation
# ----------------------------------------------------------------------------

def test_valid_frame_is_fed(harness):
    harness.pipeline.start('D1')

    assert harness.frame(SPS_FRAME) is True
    assert harness.frame(SLICE_FRAME) is True

    assert harness.decoder.fed == [SPS_FRAME, SLICE_FRAME]
    assert harness.pipeline.stats('D1')['frames_fed'] == 2
    assert harness.metrics.get_counter('video_frames_fed_total') == 2


def test_base64_payload_is_fed(harness):
    harness.pipeline.start('D1')

    assert harness.frame(base64.b64encode(SPS_FRAME).decode()) is True
    assert harness.decoder.fed == [SPS_FRAME]


def test_all_zero_frames_dropped_without_touching_stream_state(harness, caplog):
    caplog.set_level(logging.WARNING, logger='video_pipeline')
    stream = harness.pipeline.start('D1')

    assert harness.frame(ZERO_FRAME) is False
    assert harness.frame(ZERO_FRAME) is False

    assert harness.decoder.fed == []
    assert stream.validated_frames == 0
    assert stream.first_frame_logged is False
    assert stream.resume_attempted is False
    assert stream.stats.dropped[DropReason.ALL_ZERO.value] == 2
    assert len([r for r in caplog.records if 'All-zero' in r.getMessage()]) == 1
    assert harness.metrics.get_counter('video_frames_dropped_total', {'reason': 'all_zero'}) == 2


def test_empty_and_undecodable_frames_dropped(harness):
    stream = harness.pipeline.start('D1')

    assert harness.frame(b'') is False
    assert harness.frame('%%% not base64 %%%') is False
    assert harness.frame(None) is False

    assert stream.stats.dropped[DropReason.EMPTY.value] == 1
    assert stream.stats.dropped[DropReason.UNDECODABLE.value] == 2
    assert harness.decoder.fed == []


def test_missing_start_code_tolerated_for_first_frames(harness):
    stream = harness.pipeline.start('D1')

    results = [harness.frame(NO_START_CODE) for _ in range(config.H264_TOLERANCE_FRAMES + 2)]

    assert results == [True] * config.H264_TOLERANCE_FRAMES + [False, False]
    assert stream.stats.dropped[DropReason.INVALID_START_CODE.value] == 2
    # tolerance is spent; valid frames still flow
    assert harness.frame(SPS_FRAME) is True


def test_zero_frames_do_not_consume_tolerance(harness):
    harness.pipeline.start('D1')

    for _ in range(5):
        harness.frame(ZERO_FRAME)

    assert harness.frame(NO_START_CODE) is True


def test_frames_dropped_while_decoder_not_ready():
    harness = Harness(ready=False)
    stream = harness.pipeline.start('D1')

    assert harness.frame(SPS_FRAME) is False
    harness.decoder.is_ready = True
    assert harness.frame(SLICE_FRAME) is True

    # the early frame was dropped, not buffered
    assert harness.decoder.fed == [SLICE_FRAME]
    assert stream.stats.dropped[DropReason.DECODER_NOT_READY.value] == 1


def test_frames_after_stop_are_stale(harness):
    stream = harness.pipeline.start('D1')
    harness.pipeline.stop('D1')

    assert harness.frame(SPS_FRAME) is False
    assert harness.decoder.fed == []
    assert stream.surface.play_calls == 0
    assert harness.metrics.get_counter('video_frames_dropped_total', {'reason': 'stale'}) == 1


def test_frames_for_unknown_drone_are_stale(harness):
    harness.pipeline.start('D1')
    assert harness.frame(SPS_FRAME, drone_id='D2') is False
    assert harness.pipeline.handle_frame('not an event') is False


# ----------------------------------------------------------------------------
# Playback resume
# ----------------------------------------------------------------------------

def test_paused_surface_resumed_once(harness):
    stream = harness.pipeline.start('D1')

    harness.frame(SPS_FRAME)
    stream.surface.paused = True
    harness.frame(SLICE_FRAME)

    assert stream.surface.play_calls == 1


def test_resume_failure_is_not_retried():
    harness = Harness(fail_play=True)
    stream = harness.pipeline.start('D1')

    assert harness.frame(SPS_FRAME) is True
    assert harness.frame(SLICE_FRAME) is True

    assert stream.surface.play_calls == 1
    assert len(harness.decoder.fed) == 2


# ----------------------------------------------------------------------------
# Payload decoding
# ----------------------------------------------------------------------------

@pytest.mark.parametrize('payload', [
    SPS_FRAME,
    bytearray(SPS_FRAME),
    list(SPS_FRAME),
    {'type': 'Buffer', 'data': list(SPS_FRAME)},
    base64.b64encode(SPS_FRAME).decode(),
    'data:application/octet-stream;base64,' + base64.b64encode(SPS_FRAME).decode(),
])
def test_decode_payload_formats(payload):
    assert decode_payload(payload) == SPS_FRAME


@pytest.mark.parametrize('payload', [None, 12, [256, 1], [-1], 'not base64!', {'type': 'Other'}])
def test_decode_payload_rejects(payload):
    assert decode_payload(payload) is None


def test_has_start_code():
    assert has_start_code(SPS_FRAME)
    assert has_start_code(SLICE_FRAME)
    assert not has_start_code(NO_START_CODE)
