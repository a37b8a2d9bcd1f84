#!/usr/bin/env python3
"""
Selfie Capture – main entry point.

Usage
-----
    python main.py [OPTIONS]

Options
-------
    --resolution WxH     Camera resolution (default: 1280x720)
    --camera-index INT   OpenCV camera index (default: 0)
    --no-flip            Disable horizontal mirror
    --output-dir PATH    Where final captures are written (default: captures)
    --crop               Also save the photo cropped to the oval
    --image PATH         Assess a still image instead of opening the camera
    --verbose            Debug logging (probe results, skips)

Keyboard shortcuts
------------------
    SPACE / ENTER  – take the photo (only when the oval is green)
    q / ESC        – quit
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path
from typing import List, Optional

import cv2

from selfie_capture.camera import OpenCVFrameSource
from selfie_capture.decode import decode
from selfie_capture.errors import FatalCameraError, SelfieCaptureError, TransientCameraError
from selfie_capture.gate import assess_frame
from selfie_capture.oval import crop_to_oval
from selfie_capture.session import CapturedPhoto, CaptureSession, SessionState
from selfie_capture.visualizer import Visualizer

logger = logging.getLogger("selfie_capture")

WINDOW = "Selfie Capture"
EXIT_NOT_READY = 2


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Readiness-gated selfie capture for undertone analysis",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--resolution", default="1280x720",
                        help="Camera resolution, e.g. 1280x720")
    parser.add_argument("--camera-index", type=int, default=0,
                        help="OpenCV VideoCapture index")
    parser.add_argument("--no-flip", action="store_true",
                        help="Disable horizontal image flip")
    parser.add_argument("--output-dir", type=Path, default=Path("captures"),
                        help="Directory for final captures")
    parser.add_argument("--crop", action="store_true",
                        help="Also write the capture cropped to the oval")
    parser.add_argument("--image", type=Path, default=None,
                        help="Assess this image file and exit")
    parser.add_argument("--verbose", action="store_true",
                        help="Enable debug logging")
    return parser.parse_args(argv)


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s – %(message)s",
        datefmt="%H:%M:%S",
    )


# ---------------------------------------------------------------------------
# Still-image mode
# ---------------------------------------------------------------------------

def assess_image(path: Path) -> int:
    try:
        pixels = decode(path.read_bytes())
    except (OSError, SelfieCaptureError) as exc:
        logger.error("Cannot read %s: %s", path, exc)
        return 1

    state = assess_frame(pixels)
    print(state.message)
    if state.debug is not None:
        for name, value in asdict(state.debug).items():
            print(f"  {name:22s} {value:8.3f}")
    return 0 if state.ok else EXIT_NOT_READY


# ---------------------------------------------------------------------------
# Live mode
# ---------------------------------------------------------------------------

def save_oval_crop(photo: CapturedPhoto) -> Optional[Path]:
    image = cv2.imread(photo.location)
    if image is None:
        logger.error("Cannot re-read capture %s for cropping.", photo.location)
        return None
    src = Path(photo.location)
    dst = src.with_name(f"{src.stem}_oval{src.suffix}")
    cv2.imwrite(str(dst), crop_to_oval(image))
    logger.info("Saved oval crop: %s", dst)
    return dst


async def remount_camera(session: CaptureSession, source: OpenCVFrameSource) -> bool:
    """
    Release and reopen the device after a fatal capture failure, then let the
    session start over from its first-probe delay.  Returns False when the
    device cannot be reopened.
    """
    session.set_camera_ready(False)
    await asyncio.to_thread(source.close)
    try:
        await asyncio.to_thread(source.open)
    except SelfieCaptureError as exc:
        logger.error("Camera could not be reopened: %s", exc)
        return False
    session.set_camera_ready(True)
    logger.info("Camera remounted after failed capture.")
    return True


async def run_live(args: argparse.Namespace) -> int:
    try:
        res_w, res_h = (int(v) for v in args.resolution.lower().split("x"))
    except ValueError:
        logger.error("Invalid --resolution format.  Use WxH, e.g. 1280x720.")
        return 1

    source = OpenCVFrameSource(
        resolution=(res_w, res_h),
        camera_index=args.camera_index,
        flip_horizontal=not args.no_flip,
        output_dir=args.output_dir,
    )
    vis = Visualizer()
    handed_off: List[CapturedPhoto] = []

    def on_submit(photo: CapturedPhoto) -> None:
        handed_off.append(photo)
        print(json.dumps(photo.to_dict()))

    try:
        source.open()
    except SelfieCaptureError as exc:
        logger.error("Camera unavailable: %s", exc)
        return 1

    session = CaptureSession(source, on_submit)
    capture_task: Optional[asyncio.Task] = None

    logger.info("Frame your face in the oval.  Press SPACE to capture, 'q' or ESC to quit.")
    cv2.namedWindow(WINDOW, cv2.WINDOW_NORMAL)

    try:
        session.set_camera_ready(True)
        while session.state is not SessionState.SUBMITTED:
            # Preview reads bypass the session's in-flight marker; the source's
            # device lock keeps them from interleaving with probe/final reads.
            try:
                frame = await asyncio.to_thread(source.read_frame)
            except TransientCameraError:
                await asyncio.sleep(0.03)
                continue

            annotated = vis.draw(frame, session.quality, capturing=session.state is SessionState.CAPTURING)
            cv2.imshow(WINDOW, annotated)
            key = cv2.waitKey(1) & 0xFF
            if key in (ord("q"), 27):
                logger.info("Quit requested by user.")
                break
            if key in (ord(" "), 13) and capture_task is None and session.quality.ok:
                capture_task = asyncio.create_task(session.capture())

            if capture_task is not None and capture_task.done():
                exc = capture_task.exception()
                capture_task = None
                if exc is not None:
                    logger.error("Photo capture failed: %s", exc)
                    if isinstance(exc, FatalCameraError) and not await remount_camera(session, source):
                        return 1

            await asyncio.sleep(0)

        if capture_task is not None:
            await asyncio.gather(capture_task, return_exceptions=True)

    except KeyboardInterrupt:
        logger.info("Interrupted.")
    finally:
        session.dispose()
        source.close()
        cv2.destroyAllWindows()

    if not handed_off:
        return EXIT_NOT_READY
    if args.crop:
        save_oval_crop(handed_off[0])
    return 0


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging(args.verbose)
    if args.image is not None:
        return assess_image(args.image)
    return asyncio.run(run_live(args))


if __name__ == "__main__":
    sys.exit(main())
