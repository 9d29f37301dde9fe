"""A simple motion detector comparing successive low resolution frames."""

from __future__ import annotations

import sys
import threading
from dataclasses import dataclass
from typing import Any, Mapping

import numpy as np

from picampipe.stage import LORES, CompletedRequest, PostProcessingStage, Streams, register_stage

RESULT_KEY = "motion_detect.result"


@dataclass
class MotionDetectConfig:
    """Detector settings; ROI dimensions are fractions of the lores image."""

    roi_x: float = 0.0
    roi_y: float = 0.0
    roi_width: float = 1.0
    roi_height: float = 1.0
    hskip: int = 1
    vskip: int = 1
    difference_m: float = 0.1
    difference_c: int = 10
    region_threshold: float = 0.005
    frame_period: int = 5
    verbose: bool = False


def _to_pixels(fraction: float, size: int) -> int:
    return max(0, int(np.float32(fraction) * np.float32(size)))


@register_stage("motion_detect")
class MotionDetectStage(PostProcessingStage):
    """Flag motion when enough ROI pixels differ from the previous frame.

    The result is stored under "motion_detect.result" in the request's
    post-processing metadata.
    """

    name = "motion_detect"

    def __init__(self) -> None:
        self.config = MotionDetectConfig()
        self._lock = threading.Lock()
        self._active = False
        self._lores_stride = 0
        self._roi_x = self._roi_y = self._roi_width = self._roi_height = 0
        self._region_threshold = 0
        self._previous = np.zeros((0, 0), dtype=np.uint8)
        self._first_time = True
        self._motion_detected = False

    def read(self, params: Mapping[str, Any]) -> None:
        self.config = MotionDetectConfig(
            roi_x=float(params.get("roi_x", 0.0)),
            roi_y=float(params.get("roi_y", 0.0)),
            roi_width=float(params.get("roi_width", 1.0)),
            roi_height=float(params.get("roi_height", 1.0)),
            hskip=int(params.get("hskip", 1)),
            vskip=int(params.get("vskip", 1)),
            difference_m=float(params.get("difference_m", 0.1)),
            difference_c=int(params.get("difference_c", 10)),
            region_threshold=float(params.get("region_threshold", 0.005)),
            frame_period=int(params.get("frame_period", 5)),
            verbose=bool(int(params.get("verbose", 0))),
        )

    def configure(self, streams: Streams) -> None:
        lores = streams.lores
        self._active = lores is not None
        if lores is None:
            return
        config = self.config
        config.hskip = max(config.hskip, 1)
        config.vskip = max(config.vskip, 1)
        width = lores.width // config.hskip
        height = lores.height // config.vskip
        self._lores_stride = lores.stride * config.vskip

        roi_x = _to_pixels(config.roi_x, width)
        roi_y = _to_pixels(config.roi_y, height)
        roi_width = _to_pixels(config.roi_width, width)
        roi_height = _to_pixels(config.roi_height, height)
        threshold = max(
            0,
            int(np.float32(config.region_threshold) * np.float32(roi_width) * np.float32(roi_height)),
        )

        roi_x = min(roi_x, width)
        roi_y = min(roi_y, height)
        roi_width = min(roi_width, width - roi_x)
        roi_height = min(roi_height, height - roi_y)
        threshold = min(threshold, roi_width * roi_height)

        self._roi_x, self._roi_y = roi_x, roi_y
        self._roi_width, self._roi_height = roi_width, roi_height
        self._region_threshold = threshold

        if config.verbose:
            print(
                f"Lores: {width}x{height} roi: ({roi_x},{roi_y}) "
                f"{roi_width}x{roi_height} threshold: {threshold}",
                file=sys.stderr,
            )

        self._previous = np.zeros((roi_height, roi_width), dtype=np.uint8)
        self._first_time = True
        self._motion_detected = False

    def _sample_roi(self, buffer: Any) -> np.ndarray:
        image = np.frombuffer(buffer, dtype=np.uint8)
        hskip = self.config.hskip
        rows = (self._roi_y + np.arange(self._roi_height)) * self._lores_stride + self._roi_x * hskip
        cols = np.arange(self._roi_width) * hskip
        return image[rows[:, None] + cols[None, :]]

    def process(self, request: CompletedRequest) -> bool:
        if not self._active:
            return False
        config = self.config
        if config.frame_period and request.sequence % config.frame_period:
            return False

        current = self._sample_roi(request.buffers[LORES])

        with self._lock:
            if self._first_time:
                self._first_time = False
                self._previous = current.copy()
                request.post_process_metadata[RESULT_KEY] = self._motion_detected
                return False

            old = self._previous
            limit = np.float32(config.difference_m) * old.astype(np.float32) + np.float32(
                config.difference_c
            )
            changed = np.abs(current.astype(np.int32) - old.astype(np.int32)) > limit
            regions = int(np.count_nonzero(changed))
            motion_detected = current.size > 0 and regions >= self._region_threshold
            self._previous = current.copy()

            if config.verbose and motion_detected != self._motion_detected:
                print(f"Motion {'detected' if motion_detected else 'stopped'}", file=sys.stderr)

            self._motion_detected = motion_detected
            request.post_process_metadata[RESULT_KEY] = motion_detected

        return False