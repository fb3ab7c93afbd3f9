"""Tests for FrameSource: request gating, the single frame slot, and device failures."""

import threading
import time

import pytest

from conftest import ManualDevice
from monitor.capture import FrameSource, RawFrame
from monitor.errors import CameraUnavailable, EncodeFailure


def _raw(tag: int) -> RawFrame:
    return RawFrame(data=bytes([tag]) * 6, width=2, height=2)


def _tag_encoder(data, width, height):
    return b"jpeg" + data[:1]


@pytest.fixture
def device():
    return ManualDevice()


@pytest.fixture
def source(device):
    src = FrameSource(device, encoder=_tag_encoder, poll_interval=0.01)
    src.open()
    return src


class TestLifecycle:
    def test_open_registers_listener(self, device, source):
        assert device.listener is source
        assert source.is_open
        assert not source.is_ready

    def test_open_is_noop_when_healthy(self, device, source):
        source.open()
        assert device.opens == 1

    def test_ready_callback(self, source):
        source.on_ready()
        assert source.is_ready

    def test_close_is_idempotent(self, device, source):
        source.close()
        source.close()
        assert device.closes == 1
        assert not source.is_open

    def test_open_wraps_unexpected_errors(self):
        src = FrameSource(ManualDevice(fail_open=RuntimeError("no sensor")))
        with pytest.raises(CameraUnavailable, match="no sensor"):
            src.open()
        assert not src.is_open

    def test_open_propagates_camera_unavailable(self):
        src = FrameSource(ManualDevice(fail_open=CameraUnavailable("no camera")))
        with pytest.raises(CameraUnavailable, match="no camera"):
            src.open()

    def test_error_clears_ready_and_reopen_restarts_device(self, device, source):
        source.on_ready()
        source.on_error("disconnected")

        assert not source.is_ready
        assert not source.is_open

        source.open()
        assert device.closes == 1
        assert device.opens == 2
        assert source.is_open


class TestRequestGating:
    def test_request_refused_when_not_ready(self, source):
        assert source.request_frame() is False

    def test_unrequested_frames_are_dropped(self, source):
        source.on_ready()
        source.on_frame(_raw(1))
        assert source._slot.take() is None

    def test_one_request_keeps_one_frame(self, source):
        source.on_ready()
        assert source.request_frame()
        source.on_frame(_raw(1))
        source.on_frame(_raw(2))

        frame = source._slot.take()
        assert frame.data == b"jpeg\x01"
        assert source._slot.take() is None

    def test_newer_frame_overwrites_unconsumed_one(self, source):
        source.on_ready()
        source.request_frame()
        source.on_frame(_raw(1))
        source.request_frame()
        source.on_frame(_raw(2))

        assert source._slot.take().data == b"jpeg\x02"
        assert source._slot.take() is None

    def test_error_cancels_pending_request(self, source):
        source.on_ready()
        source.request_frame()
        source.on_error("boom")
        source.on_frame(_raw(1))
        assert source._slot.take() is None

    def test_encode_failure_drops_frame(self, device):
        def failing(data, width, height):
            raise EncodeFailure("bad buffer")

        src = FrameSource(device, encoder=failing)
        src.open()
        src.on_ready()
        src.request_frame()
        src.on_frame(_raw(1))
        assert src._slot.take() is None

    def test_concurrent_deliveries_publish_once(self, device):
        encoded = []
        lock = threading.Lock()

        def counting(data, width, height):
            with lock:
                encoded.append(data)
            return b"jpeg"

        src = FrameSource(device, encoder=counting)
        src.open()
        src.on_ready()
        src.request_frame()

        barrier = threading.Barrier(8)

        def deliver(tag):
            barrier.wait()
            src.on_frame(_raw(tag))

        threads = [threading.Thread(target=deliver, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(encoded) == 1


class TestPolling:
    @pytest.mark.asyncio
    async def test_poll_returns_published_frame(self, source):
        source.on_ready()
        source.request_frame()
        threading.Timer(0.05, source.on_frame, args=(_raw(7),)).start()

        frame = await source.poll_frame(1000)
        assert frame is not None
        assert frame.data == b"jpeg\x07"

    @pytest.mark.asyncio
    async def test_poll_without_request_times_out(self, source):
        source.on_ready()
        t0 = time.monotonic()
        assert await source.poll_frame(100) is None
        elapsed = time.monotonic() - t0
        assert 0.09 <= elapsed < 0.5

    @pytest.mark.asyncio
    async def test_poll_returns_none_when_not_ready(self, source):
        t0 = time.monotonic()
        assert await source.poll_frame(1000) is None
        assert time.monotonic() - t0 < 0.1

    @pytest.mark.asyncio
    async def test_capture_discards_stale_frame(self, source):
        source.on_ready()
        source.request_frame()
        source.on_frame(_raw(1))

        threading.Timer(0.05, source.on_frame, args=(_raw(2),)).start()
        frame = await source.capture(1000)
        assert frame.data == b"jpeg\x02"

    @pytest.mark.asyncio
    async def test_capture_when_not_ready(self, source):
        assert await source.capture(100) is None
