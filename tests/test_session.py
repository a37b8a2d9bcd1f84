"""
Unit tests for ProbeScheduler and CaptureSession.

Every delay goes through an injected fake sleep, so no test waits on the
wall clock.  Run with:  pytest tests/test_session.py
"""

from __future__ import annotations

import asyncio
import threading
from typing import List, Optional

import numpy as np
import pytest

from conftest import make_face_frame, make_flat_frame
from selfie_capture.camera import Frame
from selfie_capture.errors import (
    CameraBusyError,
    ErrorKind,
    FatalCameraError,
    TransientCameraError,
    classify_error,
)
from selfie_capture.gate import DEFAULT_MESSAGE, NOT_READY, assess_frame
from selfie_capture.scheduler import ProbeScheduler
from selfie_capture.session import (
    CAPTURE_ATTEMPTS,
    FIRST_PROBE_DELAY_S,
    PROBE_INTERVAL_BAD_S,
    PROBE_INTERVAL_OK_S,
    RESUME_PROBE_DELAY_S,
    RETRY_BACKOFF_S,
    CapturedPhoto,
    CaptureSession,
    SessionState,
)

TIMER_DELAYS = {FIRST_PROBE_DELAY_S, RESUME_PROBE_DELAY_S, PROBE_INTERVAL_OK_S, PROBE_INTERVAL_BAD_S}


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeSleep:
    """
    Records requested delays and yields once.  With ``park_timers`` the
    probe-timer delays block until cancelled, which freezes the scheduler
    so a test can drive probes by hand.
    """

    def __init__(self, park_timers: bool = True) -> None:
        self.park_timers = park_timers
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self.park_timers and delay in TIMER_DELAYS:
            await asyncio.Event().wait()
        await asyncio.sleep(0)


class FakeSource:
    """Frame source that tracks concurrency and scripts its results."""

    def __init__(self, probe_pixels: Optional[np.ndarray] = None) -> None:
        self.probe_pixels = probe_pixels if probe_pixels is not None else make_face_frame()
        self.probe_error: Optional[Exception] = None
        self.capture_errors: List[Exception] = []
        self.probe_gate: Optional[asyncio.Event] = None
        self.capture_gate: Optional[asyncio.Event] = None
        self.calls: List[tuple] = []
        self.active = 0
        self.max_active = 0

    async def request_frame(self, *, quality: float, low_latency: bool) -> Frame:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        self.calls.append((quality, low_latency))
        try:
            for _ in range(3):
                await asyncio.sleep(0)
            if low_latency:
                if self.probe_gate is not None:
                    await self.probe_gate.wait()
                if self.probe_error is not None:
                    raise self.probe_error
                h, w = self.probe_pixels.shape[:2]
                return Frame(width=w, height=h, pixels=self.probe_pixels)
            if self.capture_gate is not None:
                await self.capture_gate.wait()
            if self.capture_errors:
                raise self.capture_errors.pop(0)
            return Frame(width=1920, height=1080, location="/tmp/capture_1.jpg")
        finally:
            self.active -= 1

    @property
    def capture_calls(self) -> int:
        return sum(1 for _, low_latency in self.calls if not low_latency)


async def _inline(fn, *args):
    return fn(*args)


def _session(source: FakeSource, sleep: FakeSleep, handed_off: list, offload=_inline) -> CaptureSession:
    return CaptureSession(source, handed_off.append, sleep=sleep, offload=offload)


async def _ready_session(source: FakeSource, sleep: FakeSleep, handed_off: list,
                         offload=_inline) -> CaptureSession:
    """Session whose last probe said ready; the probe timer is parked."""
    session = _session(source, sleep, handed_off, offload)
    session.set_camera_ready(True)
    await session.probe_once()
    assert session.quality.ok, session.quality
    return session


async def _until(predicate, limit: int = 500) -> None:
    for _ in range(limit):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


# ---------------------------------------------------------------------------
# ProbeScheduler
# ---------------------------------------------------------------------------

class TestProbeScheduler:

    def test_delay_adapts_to_last_result(self):
        async def scenario():
            delays: List[float] = []
            ready = [False]
            scheduler: ProbeScheduler

            async def probe():
                ready[0] = not ready[0]

            async def sleep(delay):
                delays.append(delay)
                if len(delays) == 4:
                    scheduler.stop()
                await asyncio.sleep(0)

            scheduler = ProbeScheduler(probe, lambda: 1.7 if ready[0] else 0.95, sleep=sleep)
            scheduler.start(0.45)
            await _until(lambda: not scheduler.running and len(delays) == 4)
            for _ in range(5):
                await asyncio.sleep(0)
            return delays, scheduler.ticks

        delays, ticks = asyncio.run(scenario())
        assert delays == [0.45, 1.7, 0.95, 1.7]
        assert ticks == 3

    def test_stop_cancels_pending_timer(self):
        async def scenario():
            probes = []

            async def probe():
                probes.append(1)

            async def sleep(delay):
                await asyncio.Event().wait()

            scheduler = ProbeScheduler(probe, lambda: 1.0, sleep=sleep)
            scheduler.start()
            await asyncio.sleep(0)
            assert scheduler.running
            scheduler.stop()
            scheduler.stop()
            for _ in range(5):
                await asyncio.sleep(0)
            return probes, scheduler.running

        probes, running = asyncio.run(scenario())
        assert probes == []
        assert running is False

    def test_failing_probe_keeps_schedule_alive(self):
        async def scenario():
            calls = []
            scheduler: ProbeScheduler

            async def probe():
                calls.append(1)
                if len(calls) >= 3:
                    scheduler.stop()
                raise RuntimeError("boom")

            async def sleep(delay):
                await asyncio.sleep(0)

            scheduler = ProbeScheduler(probe, lambda: 0.1, sleep=sleep)
            scheduler.start()
            await _until(lambda: len(calls) >= 3)
            return len(calls)

        assert asyncio.run(scenario()) == 3


# ---------------------------------------------------------------------------
# Probing
# ---------------------------------------------------------------------------

class TestProbing:

    def test_probe_updates_quality(self):
        async def scenario():
            source = FakeSource()
            session = _session(source, FakeSleep(), [])
            assert session.quality == NOT_READY
            session.set_camera_ready(True)
            await session.probe_once()
            state = session.state, session.quality, source.calls
            session.dispose()
            return state

        state, quality, calls = asyncio.run(scenario())
        assert state is SessionState.PROBING
        assert quality.ok is True
        assert quality.message == "Ready"
        assert calls == [(0.12, True)]

    def test_probe_skipped_until_camera_ready(self):
        async def scenario():
            source = FakeSource()
            session = _session(source, FakeSleep(), [])
            await session.probe_once()
            return source.calls, session.state

        calls, state = asyncio.run(scenario())
        assert calls == []
        assert state is SessionState.IDLE

    def test_probe_failure_keeps_last_reading(self):
        async def scenario():
            source = FakeSource()
            session = await _ready_session(source, FakeSleep(), [])
            source.probe_error = TransientCameraError("busy")
            await session.probe_once()
            quality_after_error = session.quality
            session.dispose()
            return quality_after_error

        quality = asyncio.run(scenario())
        assert quality.ok is True
        assert quality.message == "Ready"

    def test_undecodable_probe_is_swallowed(self):
        async def scenario():
            source = FakeSource()
            session = await _ready_session(source, FakeSleep(), [])

            async def garbage(*, quality, low_latency):
                return Frame(width=10, height=10, encoded=b"\x00\x01garbage")

            source.request_frame = garbage
            await session.probe_once()
            ok = session.quality.ok
            session.dispose()
            return ok

        assert asyncio.run(scenario()) is True

    def test_probe_interval_follows_quality(self):
        async def scenario():
            sleep = FakeSleep(park_timers=False)
            source = FakeSource(probe_pixels=make_flat_frame((0, 0, 0)))
            session = _session(source, sleep, [])
            session.set_camera_ready(True)
            await _until(lambda: session.scheduler.ticks >= 2)
            source.probe_pixels = make_face_frame()
            await _until(lambda: session.quality.ok)
            await _until(lambda: PROBE_INTERVAL_OK_S in sleep.delays)
            session.dispose()
            return sleep.delays

        delays = asyncio.run(scenario())
        assert delays[0] == FIRST_PROBE_DELAY_S
        assert delays[1] == PROBE_INTERVAL_BAD_S
        assert PROBE_INTERVAL_OK_S in delays

    def test_no_overlapping_requests(self):
        async def scenario():
            source = FakeSource()
            session = _session(source, FakeSleep(park_timers=False), [])
            session.set_camera_ready(True)
            extra = []
            for _ in range(2000):
                if session.scheduler.ticks >= 25:
                    break
                # Hammer the session with extra probe attempts alongside the timer.
                extra.append(asyncio.create_task(session.probe_once()))
                await asyncio.sleep(0)
            await asyncio.gather(*extra)
            session.dispose()
            return source.max_active, len(source.calls), session.scheduler.ticks

        max_active, calls, ticks = asyncio.run(scenario())
        assert ticks >= 25
        assert calls > 0
        assert max_active == 1

    def test_late_probe_after_dispose_is_ignored(self):
        async def scenario():
            source = FakeSource()
            source.probe_gate = asyncio.Event()
            session = _session(source, FakeSleep(), [])
            session.set_camera_ready(True)
            task = asyncio.create_task(session.probe_once())
            await _until(lambda: session.in_flight)
            session.dispose()
            source.probe_gate.set()
            await task
            return session.quality, session.scheduler.running

        quality, running = asyncio.run(scenario())
        assert quality == NOT_READY
        assert running is False

    def test_camera_lost_resets_reading(self):
        async def scenario():
            session = await _ready_session(FakeSource(), FakeSleep(), [])
            session.set_camera_ready(False)
            return session.quality, session.state

        quality, state = asyncio.run(scenario())
        assert quality.message == DEFAULT_MESSAGE
        assert state is SessionState.IDLE

    def test_assessment_runs_off_the_event_loop(self, monkeypatch):
        threads = []

        def recording_assess(pixels, thresholds):
            threads.append(threading.get_ident())
            return assess_frame(pixels, thresholds)

        monkeypatch.setattr("selfie_capture.session.assess_frame", recording_assess)

        async def scenario():
            session = CaptureSession(FakeSource(), [].append, sleep=FakeSleep())
            session.set_camera_ready(True)
            await session.probe_once()
            quality = session.quality
            session.dispose()
            return threading.get_ident(), quality

        loop_thread, quality = asyncio.run(scenario())
        assert quality.ok is True
        assert len(threads) == 1
        assert threads[0] != loop_thread

    def test_reading_from_before_capture_is_dropped(self):
        async def scenario():
            assess_gate = asyncio.Event()
            assess_gate.set()

            async def gated(fn, *args):
                await assess_gate.wait()
                return fn(*args)

            source = FakeSource()
            session = await _ready_session(source, FakeSleep(), [], offload=gated)
            assess_gate.clear()
            probe = asyncio.create_task(session.probe_once())
            await _until(lambda: len(source.calls) == 2 and not session.in_flight)

            source.capture_errors = [FatalCameraError("device lost")]
            with pytest.raises(FatalCameraError):
                await session.capture()
            assess_gate.set()
            await probe
            quality = session.quality
            session.dispose()
            return quality

        assert asyncio.run(scenario()) == NOT_READY


# ---------------------------------------------------------------------------
# Capture
# ---------------------------------------------------------------------------

class TestCapture:

    def test_successful_capture_hands_off_once(self):
        async def scenario():
            handed_off: list = []
            source = FakeSource()
            session = await _ready_session(source, FakeSleep(), handed_off)
            photo = await session.capture()
            return photo, handed_off, session, source

        photo, handed_off, session, source = asyncio.run(scenario())
        assert isinstance(photo, CapturedPhoto)
        assert handed_off == [photo]
        assert photo.location == "/tmp/capture_1.jpg"
        assert photo.mime_type == "image/jpeg"
        assert photo.source == "camera"
        assert photo.file_name.startswith("face_") and photo.file_name.endswith(".jpg")
        assert (photo.width, photo.height) == (1920, 1080)
        assert source.calls[-1] == (1.0, False)
        assert session.state is SessionState.SUBMITTED
        assert session.scheduler.running is False

    def test_double_tap_submits_once(self):
        async def scenario():
            handed_off: list = []
            source = FakeSource()
            session = await _ready_session(source, FakeSleep(), handed_off)
            first, second = await asyncio.gather(session.capture(), session.capture())
            return first, second, handed_off, session.state, source.capture_calls

        first, second, handed_off, state, capture_calls = asyncio.run(scenario())
        assert isinstance(first, CapturedPhoto)
        assert second is None
        assert handed_off == [first]
        assert state is SessionState.SUBMITTED
        assert capture_calls == 1

    def test_capture_after_submit_is_ignored(self):
        async def scenario():
            handed_off: list = []
            source = FakeSource()
            session = await _ready_session(source, FakeSleep(), handed_off)
            await session.capture()
            again = await session.capture()
            await session.probe_once()
            return again, handed_off, source

        again, handed_off, source = asyncio.run(scenario())
        assert again is None
        assert len(handed_off) == 1
        # Only the initial probe and the final capture reached the camera.
        assert source.calls == [(0.12, True), (1.0, False)]

    def test_capture_gated_by_quality(self):
        async def scenario():
            source = FakeSource(probe_pixels=make_flat_frame((0, 0, 0)))
            session = _session(source, FakeSleep(), [])
            session.set_camera_ready(True)
            await session.probe_once()
            result = await session.capture()
            session.dispose()
            return result, source.capture_calls

        result, capture_calls = asyncio.run(scenario())
        assert result is None
        assert capture_calls == 0

    def test_transient_errors_are_retried(self):
        async def scenario():
            handed_off: list = []
            sleep = FakeSleep()
            source = FakeSource()
            session = await _ready_session(source, sleep, handed_off)
            source.capture_errors = [
                TransientCameraError("Camera is busy"),
                TransientCameraError("Capture in progress"),
            ]
            photo = await session.capture()
            return photo, handed_off, source.capture_calls, sleep.delays

        photo, handed_off, capture_calls, delays = asyncio.run(scenario())
        assert photo is not None
        assert handed_off == [photo]
        assert capture_calls == 3
        assert delays.count(RETRY_BACKOFF_S) == 2

    def test_retries_are_bounded(self):
        async def scenario():
            handed_off: list = []
            source = FakeSource()
            session = await _ready_session(source, FakeSleep(), handed_off)
            source.capture_errors = [TransientCameraError("not ready")] * 5
            with pytest.raises(TransientCameraError):
                await session.capture()
            outcome = (handed_off, source.capture_calls, session.state,
                       session.quality, session.scheduler.running)
            session.dispose()
            return outcome

        handed_off, capture_calls, state, quality, probing = asyncio.run(scenario())
        assert handed_off == []
        assert capture_calls == CAPTURE_ATTEMPTS
        assert state is SessionState.PROBING
        assert quality == NOT_READY
        assert probing is True

    def test_fatal_error_is_not_retried(self):
        async def scenario():
            source = FakeSource()
            session = await _ready_session(source, FakeSleep(), [])
            source.capture_errors = [FatalCameraError("permission revoked")]
            with pytest.raises(FatalCameraError):
                await session.capture()
            outcome = source.capture_calls, session.state
            session.dispose()
            return outcome

        capture_calls, state = asyncio.run(scenario())
        assert capture_calls == 1
        assert state is SessionState.PROBING

    def test_untyped_source_error_clears_ready(self):
        async def scenario():
            handed_off: list = []
            source = FakeSource()
            session = await _ready_session(source, FakeSleep(), handed_off)
            source.capture_errors = [PermissionError("captures/ is read-only")]
            with pytest.raises(FatalCameraError) as excinfo:
                await session.capture()
            outcome = (excinfo.value.__cause__, session.quality, session.state,
                       source.capture_calls, handed_off)
            session.dispose()
            return outcome

        cause, quality, state, capture_calls, handed_off = asyncio.run(scenario())
        assert isinstance(cause, PermissionError)
        assert quality == NOT_READY
        assert quality.ok is False
        assert state is SessionState.PROBING
        assert capture_calls == 1
        assert handed_off == []

    def test_dispose_during_failed_capture_does_not_resume(self):
        async def scenario():
            handed_off: list = []
            source = FakeSource()
            session = await _ready_session(source, FakeSleep(), handed_off)
            source.capture_gate = asyncio.Event()
            source.capture_errors = [FatalCameraError("device lost")]
            task = asyncio.create_task(session.capture())
            await _until(lambda: session.in_flight)
            session.dispose()
            source.capture_gate.set()
            with pytest.raises(FatalCameraError):
                await task
            for _ in range(5):
                await asyncio.sleep(0)
            return session.scheduler.running, session.state, handed_off, source.calls

        running, state, handed_off, calls = asyncio.run(scenario())
        assert running is False
        assert state is SessionState.IDLE
        assert handed_off == []
        # Nothing reached the camera after the failed capture.
        assert calls == [(0.12, True), (1.0, False)]

    def test_capture_waits_for_in_flight_probe(self):
        async def scenario():
            handed_off: list = []
            source = FakeSource()
            session = await _ready_session(source, FakeSleep(), handed_off)
            source.probe_gate = asyncio.Event()
            probe = asyncio.create_task(session.probe_once())
            await _until(lambda: session.in_flight)
            capture = asyncio.create_task(session.capture())
            for _ in range(10):
                await asyncio.sleep(0)
            assert source.capture_calls == 0
            source.probe_gate.set()
            await probe
            photo = await capture
            return photo, source.max_active, handed_off

        photo, max_active, handed_off = asyncio.run(scenario())
        assert photo is not None
        assert handed_off == [photo]
        assert max_active == 1

    def test_stuck_probe_makes_capture_busy(self):
        async def scenario():
            handed_off: list = []
            source = FakeSource()
            session = await _ready_session(source, FakeSleep(), handed_off)
            source.probe_gate = asyncio.Event()
            probe = asyncio.create_task(session.probe_once())
            await _until(lambda: session.in_flight)
            with pytest.raises(CameraBusyError):
                await session.capture()
            source.probe_gate.set()
            await probe
            outcome = handed_off, source.capture_calls, session.state
            session.dispose()
            return outcome

        handed_off, capture_calls, state = asyncio.run(scenario())
        assert handed_off == []
        assert capture_calls == 0
        assert state is SessionState.PROBING


class TestErrorClassification:

    def test_typed_errors(self):
        assert classify_error(TransientCameraError("busy")) is ErrorKind.TRANSIENT
        assert classify_error(FatalCameraError("gone")) is ErrorKind.FATAL

    def test_untyped_errors_are_fatal(self):
        assert classify_error(RuntimeError("camera busy")) is ErrorKind.FATAL
