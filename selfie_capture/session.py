"""
Capture session – the state machine behind the shutter.

::

    IDLE ──camera ready──▶ PROBING ──capture() [quality.ok]──▶ CAPTURING ──▶ SUBMITTED
      ▲                       ▲                                     │
      └───────────────────────┴─────────── failure ─────────────────┘

While probing, a cheap low-quality frame is assessed every 0.95 s (not ready)
or 1.7 s (ready) and the result is kept as :attr:`CaptureSession.quality`.
``capture()`` stops probing, waits for any in-flight probe, then takes the
full-quality photo with bounded retries on transient errors and hands it off
exactly once.

The session owns the in-flight marker: at most one camera request, probe or
final, is outstanding at any time.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from enum import Enum, auto
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import numpy as np

from selfie_capture.camera import Frame, FrameSource
from selfie_capture.decode import decode
from selfie_capture.errors import (
    CameraBusyError,
    CaptureError,
    DecodeError,
    ErrorKind,
    FatalCameraError,
    SelfieCaptureError,
    classify_error,
)
from selfie_capture.gate import DEFAULT_THRESHOLDS, NOT_READY, GateThresholds, QualityState, assess_frame
from selfie_capture.scheduler import ProbeScheduler, SleepFn

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Timings (seconds)
# ---------------------------------------------------------------------------
PROBE_QUALITY = 0.12
PROBE_INTERVAL_OK_S = 1.7
PROBE_INTERVAL_BAD_S = 0.95
FIRST_PROBE_DELAY_S = 0.45
RESUME_PROBE_DELAY_S = 0.65

IDLE_WAIT_S = 1.6
IDLE_POLL_S = 0.05
SETTLE_DELAY_S = 0.06

CAPTURE_QUALITY = 1.0
CAPTURE_ATTEMPTS = 3
RETRY_BACKOFF_S = 0.25

OffloadFn = Callable[..., Awaitable[Any]]


class SessionState(Enum):
    IDLE       = auto()
    PROBING    = auto()
    CAPTURING  = auto()
    SUBMITTED  = auto()


@dataclass(frozen=True)
class CapturedPhoto:
    """Descriptor handed to the consumer after a successful capture."""

    location: str
    file_name: str
    mime_type: str
    source: str
    width: int
    height: int

    def to_dict(self) -> dict:
        return asdict(self)


class CaptureSession:
    """
    Parameters
    ----------
    source:
        Frame source used for both probes and the final capture.
    on_submit:
        Called exactly once with the :class:`CapturedPhoto`.
    thresholds:
        Readiness gate limits.
    sleep:
        Awaitable sleep used for every delay (probe timer, idle polling,
        settle, retry backoff).  Tests inject a fake.
    offload:
        Runs the frame assessment off the event loop; ``offload(fn, *args)``
        must return an awaitable of ``fn(*args)``.
    """

    def __init__(
        self,
        source: FrameSource,
        on_submit: Callable[[CapturedPhoto], None],
        thresholds: GateThresholds = DEFAULT_THRESHOLDS,
        sleep: SleepFn = asyncio.sleep,
        offload: OffloadFn = asyncio.to_thread,
    ) -> None:
        self._source = source
        self._on_submit = on_submit
        self.thresholds = thresholds
        self._sleep = sleep
        self._offload = offload

        self._state = SessionState.IDLE
        self._quality: QualityState = NOT_READY
        self._in_flight: Optional[str] = None   # "probe" / "capture"
        self._mounted = True
        self._camera_ready = False
        self._submitted = False
        self._reading = 0                       # probe results from an older reading are dropped

        self._scheduler = ProbeScheduler(self.probe_once, self._probe_delay, sleep=sleep)

    # ------------------------------------------------------------------
    # UI binding
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def quality(self) -> QualityState:
        return self._quality

    @property
    def in_flight(self) -> bool:
        return self._in_flight is not None

    @property
    def submitted(self) -> bool:
        return self._submitted

    @property
    def mounted(self) -> bool:
        return self._mounted

    @property
    def scheduler(self) -> ProbeScheduler:
        return self._scheduler

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def set_camera_ready(self, ready: bool) -> None:
        """
        Report whether the camera is initialised and permitted.  Becoming
        ready starts probing; losing readiness stops it and clears the last
        reading.
        """
        self._camera_ready = ready
        if ready:
            self.start_probing(FIRST_PROBE_DELAY_S)
        else:
            self.stop_probing()
            self._reading += 1
            self._quality = NOT_READY

    def start_probing(self, delay: Optional[float] = None) -> None:
        if not self._mounted or self._submitted or self._state is SessionState.CAPTURING:
            return
        self._scheduler.start(delay)
        self._state = SessionState.PROBING

    def stop_probing(self) -> None:
        self._scheduler.stop()
        if self._state is SessionState.PROBING:
            self._state = SessionState.IDLE

    def dispose(self) -> None:
        """Tear down: stop probing and turn late callbacks into no-ops."""
        self._mounted = False
        self._scheduler.stop()
        if self._state is not SessionState.SUBMITTED:
            self._state = SessionState.IDLE
        logger.debug("Capture session disposed.")

    # ------------------------------------------------------------------
    # Probe
    # ------------------------------------------------------------------

    async def probe_once(self) -> None:
        """
        Assess one cheap frame and keep the result.  Never raises: probe
        failures leave the previous reading in place.
        """
        if not self._mounted or self._submitted:
            return
        if not self._camera_ready or self._state is SessionState.CAPTURING or self._in_flight:
            logger.debug(
                "Probe skipped – ready=%s state=%s in_flight=%s",
                self._camera_ready, self._state.name, self._in_flight,
            )
            return

        reading = self._reading
        try:
            frame = await self._request("probe", quality=PROBE_QUALITY, low_latency=True)
            state = await self._offload(self._assess, frame)
        except Exception as exc:                             # noqa: BLE001
            logger.debug("Probe failed: %s", exc)
            return

        if self._mounted and not self._submitted and reading == self._reading:
            self._quality = state

    def _assess(self, frame: Frame) -> QualityState:
        return assess_frame(self._pixels_of(frame), self.thresholds)

    def _probe_delay(self) -> float:
        return PROBE_INTERVAL_OK_S if self._quality.ok else PROBE_INTERVAL_BAD_S

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    async def capture(self) -> Optional[CapturedPhoto]:
        """
        Take the final photo.

        Returns the :class:`CapturedPhoto` on success, or *None* when the
        request is ignored (not ready, already capturing, already submitted,
        disposed).  Raises :class:`CaptureError` when the photo could not be
        taken; the session is back to probing by then.
        """
        if self._submitted or self._state in (SessionState.CAPTURING, SessionState.SUBMITTED):
            logger.debug("Capture ignored – state=%s", self._state.name)
            return None
        if not self._mounted or not self._quality.ok:
            logger.debug("Capture ignored – mounted=%s quality=%r", self._mounted, self._quality.message)
            return None

        self._scheduler.stop()
        self._state = SessionState.CAPTURING
        self._reading += 1
        try:
            if not await self._wait_for_idle():
                raise CameraBusyError("Camera is still focusing. Try again.")
            await self._sleep(SETTLE_DELAY_S)

            frame = await self._capture_with_retry()
            if not frame.location:
                raise CaptureError("Photo capture failed")

            photo = CapturedPhoto(
                location=frame.location,
                file_name=f"face_{int(time.time() * 1000)}.jpg",
                mime_type="image/jpeg",
                source="camera",
                width=frame.width,
                height=frame.height,
            )
            self._submitted = True
            self._state = SessionState.SUBMITTED
            logger.info("Photo captured (%dx%d) – handing off %s", photo.width, photo.height, photo.location)
            self._on_submit(photo)
            return photo
        except SelfieCaptureError as exc:
            logger.warning("Photo capture failed: %s", exc)
            if self._mounted:
                self._quality = NOT_READY
            raise
        finally:
            if not self._submitted:
                self._state = SessionState.IDLE
                self.start_probing(RESUME_PROBE_DELAY_S)

    async def _wait_for_idle(self) -> bool:
        polls = int(round(IDLE_WAIT_S / IDLE_POLL_S))
        for _ in range(polls):
            if not self._in_flight:
                return True
            await self._sleep(IDLE_POLL_S)
        return not self._in_flight

    async def _capture_with_retry(self) -> Frame:
        attempt = 1
        while True:
            try:
                return await self._request("capture", quality=CAPTURE_QUALITY, low_latency=False)
            except Exception as exc:
                if classify_error(exc) is not ErrorKind.TRANSIENT or attempt >= CAPTURE_ATTEMPTS:
                    if isinstance(exc, SelfieCaptureError):
                        raise
                    # Untyped source failures surface as a fatal camera error.
                    raise FatalCameraError(f"Photo capture failed: {exc}") from exc
                logger.warning(
                    "Capture attempt %d/%d failed (%s) – retrying in %.0f ms",
                    attempt, CAPTURE_ATTEMPTS, exc, RETRY_BACKOFF_S * 1000,
                )
            attempt += 1
            await self._sleep(RETRY_BACKOFF_S)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _request(self, kind: str, *, quality: float, low_latency: bool) -> Frame:
        if self._in_flight is not None:
            raise CameraBusyError(f"Camera busy: {self._in_flight} request in progress")
        self._in_flight = kind
        try:
            return await self._source.request_frame(quality=quality, low_latency=low_latency)
        finally:
            self._in_flight = None

    @staticmethod
    def _pixels_of(frame: Frame) -> np.ndarray:
        if frame.pixels is not None:
            return frame.pixels
        if frame.encoded is not None:
            return decode(frame.encoded)
        if frame.location is not None:
            return decode(Path(frame.location).read_bytes())
        raise DecodeError("Frame carries no image data.")
