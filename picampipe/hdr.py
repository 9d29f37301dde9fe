"""HDR and dynamic range compression by accumulating and tonemapping YUV420 frames."""

from __future__ import annotations

import math
import sys
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

import numpy as np

from picampipe.histogram import Histogram
from picampipe.pwl import Pwl
from picampipe.stage import (
    STILL,
    CompletedRequest,
    PostProcessingStage,
    StreamConfiguration,
    StreamInfo,
    Streams,
    register_stage,
)

JpegSaver = Callable[[Any, StreamInfo, Mapping[str, Any], str], None]

_FILENAME_LIMIT = 127


@dataclass
class LpFilterConfig:
    """Low pass filter settings; a smaller strength smooths more."""

    strength: float = 1.0
    threshold: Pwl = field(default_factory=Pwl)


@dataclass
class TonemapPoint:
    """Target position in the dynamic range for an inter-quantile mean."""

    q: float
    width: float
    target: float
    max_up: float
    max_down: float

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> TonemapPoint:
        return cls(
            q=float(params["q"]),
            width=float(params["width"]),
            target=float(params["target"]),
            max_up=float(params["max_up"]),
            max_down=float(params["max_down"]),
        )


@dataclass
class GlobalTonemapConfig:
    """Points of the global tone curve; strength 1 follows them, 0 ignores them."""

    points: list[TonemapPoint] = field(default_factory=list)
    strength: float = 1.0


@dataclass
class LocalTonemapConfig:
    """Gains applied to local contrast above and below the neighbourhood."""

    pos_strength: Pwl = field(default_factory=Pwl)
    neg_strength: Pwl = field(default_factory=Pwl)
    colour_scale: float = 1.0


def _scaled_strength(pwl: Pwl, strength: float) -> Pwl:
    # A strength of 1 keeps the function; a strength of 0 gives the value 1.
    result = Pwl()
    pwl.map(lambda x, y: result.append(x, y * strength + 1 - strength))
    return result


@dataclass
class HdrConfig:
    """Complete configuration of the HDR stage."""

    num_frames: int = 1
    lp_filter: LpFilterConfig = field(default_factory=LpFilterConfig)
    global_tonemap: GlobalTonemapConfig = field(default_factory=GlobalTonemapConfig)
    local_tonemap: LocalTonemapConfig = field(default_factory=LocalTonemapConfig)
    jpeg_filename: str = ""

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> HdrConfig:
        strength = float(params["local_tonemap_strength"])
        return cls(
            num_frames=int(params["num_frames"]),
            lp_filter=LpFilterConfig(
                strength=float(params["lp_filter_strength"]),
                threshold=Pwl.from_values(params["lp_filter_threshold"]),
            ),
            global_tonemap=GlobalTonemapConfig(
                points=[TonemapPoint.from_params(p) for p in params["global_tonemap_points"]],
                strength=float(params["global_tonemap_strength"]),
            ),
            local_tonemap=LocalTonemapConfig(
                pos_strength=_scaled_strength(Pwl.from_values(params["local_pos_strength"]), strength),
                neg_strength=_scaled_strength(Pwl.from_values(params["local_neg_strength"]), strength),
                colour_scale=float(params["local_colour_scale"]),
            ),
            jpeg_filename=str(params.get("jpeg_filename", "")),
        )


def _readable(src: Any) -> np.ndarray:
    if isinstance(src, np.ndarray):
        return np.asarray(src, dtype=np.uint8).reshape(-1)
    return np.frombuffer(src, dtype=np.uint8)


def _writable(dest: Any) -> np.ndarray:
    if isinstance(dest, np.ndarray):
        if dest.dtype != np.uint8:
            raise TypeError("destination array must hold uint8 values")
        return dest.reshape(-1)
    view = np.frombuffer(dest, dtype=np.uint8)
    if not view.flags.writeable:
        raise TypeError("destination buffer is read-only")
    return view


def _iir_pass(
    pixels: list[int],
    width: int,
    height: int,
    threshold: list[float],
    weights: list[float],
    strength: float,
    reverse: bool,
) -> tuple[list[float], list[float]]:
    """One direction of the edge-preserving IIR low pass filter."""
    size = 1
    count = width * height
    values = [0.0] * count
    weight_sums = [0.0] * count
    num_weights = len(weights)
    if reverse:
        rows = range(height - 1 - size, -1, -1)
        cols = range(width - 1 - size, -1, -1)
        neighbours = (width + 1, width, width - 1, 1)
    else:
        rows = range(size, height)
        cols = range(size, width)
        neighbours = (-width - 1, -width, -width + 1, -1)
    for y in rows:
        base = y * width
        for x in cols:
            off = base + x
            pixel = pixels[off]
            scale = 10 / threshold[pixel]
            pixel_wt_sum = pixel * strength
            wt_sum = strength
            for d in neighbours:
                p = int(values[off + d])
                idx = int(abs(p - pixel) * scale)
                wt = weights[idx] if idx < num_weights else 0.0
                pixel_wt_sum += wt * p
                wt_sum += wt
            values[off] = pixel_wt_sum / wt_sum
            weight_sums[off] = wt_sum
    return values, weight_sums


class HdrImage:
    """An accumulator image of signed 16-bit YUV420 pixels."""

    def __init__(self, width: int = 0, height: int = 0, num_pixels: int = 0) -> None:
        self.width = width
        self.height = height
        self.pixels = np.zeros(num_pixels, dtype=np.int16)
        self.dynamic_range = 0  # one more than the maximum pixel value

    def clear(self) -> None:
        self.pixels.fill(0)

    def accumulate(self, src: Any, stride: int) -> None:
        """Add a YUV420 frame with the given Y stride to the accumulator."""
        data = _readable(src)
        width, height = self.width, self.height
        width2, stride2 = width // 2, stride // 2
        y_size = stride * height
        if data.size < y_size + height * stride2:
            raise ValueError("source buffer too small for the image")
        wh = width * height
        luma = data[:y_size].reshape(height, stride)[:, :width]
        self.pixels[:wh] += luma.reshape(-1).astype(np.int16)
        chroma = data[y_size : y_size + height * stride2].reshape(height, stride2)[:, :width2]
        self.pixels[wh : wh + height * width2] += chroma.reshape(-1).astype(np.int16) - 128
        self.dynamic_range += 256

    def lp_filter(self, config: LpFilterConfig) -> HdrImage:
        """Return a smoothed, roughly edge-preserving copy of the Y plane."""
        threshold = config.threshold.generate_lut(float)
        weights = [math.exp(-d * d / 100.0) for d in range(31)]
        width, height = self.width, self.height
        count = width * height
        pixels = self.pixels[:count].tolist()

        fwd, fwd_w = _iir_pass(pixels, width, height, threshold, weights, config.strength, False)
        rev, rev_w = _iir_pass(pixels, width, height, threshold, weights, config.strength, True)

        fwd_a, fwd_wa = np.array(fwd), np.array(fwd_w)
        rev_a, rev_wa = np.array(rev), np.array(rev_w)
        denom = fwd_wa + rev_wa
        with np.errstate(divide="ignore", invalid="ignore"):
            combined = (fwd_a * fwd_wa + rev_a * rev_wa) / denom
        combined = np.where(denom > 0, np.trunc(combined), 0.0)

        out = HdrImage(width, height, count)
        out.dynamic_range = self.dynamic_range
        out.pixels[:] = combined.astype(np.int16)
        return out

    def calculate_histogram(self) -> Histogram:
        """Histogram of the Y plane over the dynamic range."""
        luma = self.pixels[: self.width * self.height].astype(np.int64)
        if luma.size and (luma.min() < 0 or luma.max() >= self.dynamic_range):
            raise ValueError("pixel value outside the dynamic range")
        return Histogram(np.bincount(luma, minlength=self.dynamic_range).tolist())

    def create_tonemap(self, config: GlobalTonemapConfig) -> Pwl:
        """Build the global tone curve from the configured quantile targets."""
        maxval = self.dynamic_range - 1
        histogram = self.calculate_histogram()
        tonemap = Pwl()
        tonemap.append(0, 0)
        for tp in config.points:
            iqm = histogram.inter_quantile_mean(tp.q - tp.width, tp.q + tp.width)
            target = tp.target * 4096
            lo, hi = iqm * tp.max_down, iqm * tp.max_up
            target = lo if target < lo else (hi if hi < target else target)
            target = min(max(target, 0.0), 4095.0)
            target = iqm + (target - iqm) * config.strength
            tonemap.append(iqm, target)
        tonemap.append(maxval, maxval)
        return tonemap

    def tonemap(self, lp: HdrImage, config: HdrConfig) -> None:
        """Tonemap the low pass image and add back the scaled high pass detail."""
        tonemap_lut = np.array(self.create_tonemap(config.global_tonemap).generate_lut(int), dtype=np.int64)
        pos_lut = np.array(config.local_tonemap.pos_strength.generate_lut(float))
        neg_lut = np.array(config.local_tonemap.neg_strength.generate_lut(float))
        colour_scale = config.local_tonemap.colour_scale

        width, height = self.width, self.height
        wh = width * height
        maxval = self.dynamic_range - 1

        luma = self.pixels[:wh].astype(np.int64)
        lp_luma = lp.pixels[:wh].astype(np.int64)
        high_pass = luma - lp_luma
        strength = np.where(high_pass > 0, pos_lut[lp_luma], neg_lut[lp_luma])
        final = np.clip(tonemap_lut[lp_luma] + np.trunc(strength * high_pass).astype(np.int64), 0, maxval)
        self.pixels[:wh] = final.astype(np.int16)

        ys = np.arange(0, height, 2)[:, None]
        xs = np.arange(0, width, 2)[None, :]
        y_index = (ys * width + xs).reshape(-1)
        off_u = (wh + (ys * width) // 4 + xs // 2).reshape(-1)
        off_v = off_u + wh // 4
        f = (final[y_index] + 1) / (lp_luma[y_index] + 1)
        f = (f - 1) * colour_scale + 1
        u = self.pixels[off_u].astype(np.float64)
        v = self.pixels[off_v].astype(np.float64)
        self.pixels[off_u] = np.trunc(u * f).astype(np.int16)
        self.pixels[off_v] = np.trunc(v * f).astype(np.int16)

    def extract(self, dest: Any, stride: int) -> None:
        """Write the image back into an 8-bit YUV420 buffer with the given stride."""
        ratio = self.dynamic_range // 256
        if ratio == 0:
            raise ValueError("dynamic range too small to extract an 8-bit image")
        out = _writable(dest)
        width, height = self.width, self.height
        wh = width * height

        luma = np.trunc(self.pixels[:wh].astype(np.float64) / ratio).astype(np.int64) & 0xFF
        y_index = (np.arange(height)[:, None] * stride + np.arange(width)[None, :]).reshape(-1)
        out[y_index] = luma.astype(np.uint8)

        w, h, s = width // 2, height // 2, stride // 2
        dest_u = stride * height
        dest_v = dest_u + stride * height // 4
        u = self.pixels[wh : wh + w * h].astype(np.float64)
        v = self.pixels[wh + wh // 4 : wh + wh // 4 + w * h].astype(np.float64)
        u = np.clip(np.trunc(u / ratio).astype(np.int64) + 128, 0, 255).astype(np.uint8)
        v = np.clip(np.trunc(v / ratio).astype(np.int64) + 128, 0, 255).astype(np.uint8)
        uv_index = (np.arange(h)[:, None] * s + np.arange(w)[None, :]).reshape(-1)
        out[dest_u + uv_index] = u
        out[dest_v + uv_index] = v

    def scale(self, factor: float) -> None:
        """Multiply every pixel and the dynamic range by factor, truncating."""
        self.pixels = np.trunc(self.pixels.astype(np.float64) * factor).astype(np.int16)
        self.dynamic_range = int(self.dynamic_range * factor)


def _frame_filename(pattern: str, frame_num: int) -> str:
    try:
        name = pattern % frame_num
    except TypeError:
        name = pattern
    return name[:_FILENAME_LIMIT]


@register_stage("hdr")
class HdrStage(PostProcessingStage):
    """Accumulate several still frames and emit one tonemapped HDR frame.

    All but the last of the configured frames are dropped. An optional
    jpeg_saver(buffer, info, metadata, filename) saves each constituent frame.
    """

    name = "hdr"

    def __init__(self, jpeg_saver: JpegSaver | None = None) -> None:
        self.config = HdrConfig()
        self._jpeg_saver = jpeg_saver
        self._info: StreamInfo | None = None
        self._frame_num = 0
        self._lock = threading.Lock()
        self._acc = HdrImage()
        self._lp = HdrImage()

    def read(self, params: Mapping[str, Any]) -> None:
        self.config = HdrConfig.from_params(params)

    def adjust_config(self, use_case: str, config: StreamConfiguration) -> None:
        # Several full resolution frames are captured quickly, so queue enough buffers.
        if use_case == "still" and config.buffer_count < 3:
            config.buffer_count = 3

    def configure(self, streams: Streams) -> None:
        info = streams.still
        self._info = info
        if info is None:
            return
        if info.pixel_format != "YUV420":
            raise ValueError("HdrStage: only supports YUV420")
        self._frame_num = 0
        self._acc = HdrImage(info.width, info.height, info.width * info.height * 3 // 2)
        self._acc.clear()
        self._lp = HdrImage(info.width, info.height, info.width * info.height)

    def process(self, request: CompletedRequest) -> bool:
        info = self._info
        if info is None:
            return False
        config = self.config
        with self._lock:
            if self._frame_num >= config.num_frames:
                return False
            image = request.buffers[STILL]

            print(f"Accumulating frame {self._frame_num}", file=sys.stderr)
            self._acc.accumulate(image, info.stride)

            if config.jpeg_filename:
                filename = _frame_filename(config.jpeg_filename, self._frame_num)
                if self._jpeg_saver is not None:
                    self._jpeg_saver(image, info, request.metadata, filename)
                else:
                    print("No JPEG saver - unable to save JPEG", file=sys.stderr)

            self._frame_num += 1
            if self._frame_num < config.num_frames:
                return True

            print("Doing HDR processing...", file=sys.stderr)
            self._acc.scale(16.0 / config.num_frames)
            self._lp = self._acc.lp_filter(config.lp_filter)
            self._acc.tonemap(self._lp, config)
            self._acc.extract(image, info.stride)
            print("HDR done!", file=sys.stderr)
        return False