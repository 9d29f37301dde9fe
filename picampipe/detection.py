"""Results of neural-network stages: object detections, classifications, poses and segmentations."""

from __future__ import annotations

import heapq
from dataclasses import dataclass, field
from os import PathLike
from typing import Any, Iterable, Sequence

import numpy as np

# Number of body features reported by the pose model, and the size of its heatmap grid.
FEATURE_SIZE = 17
HEATMAP_DIMS = 9

# Input size of the object detection model, as (width, height).
OBJECT_DETECT_SIZE = (300, 300)

# Label lists for the classifier are padded to a multiple of this.
CLASSIFY_LABEL_PADDING = 16


def _format_confidence(value: float) -> str:
    # Two significant digits, as a stream with precision 2 prints a float.
    return f"{value:.2g}"


@dataclass(frozen=True)
class Rectangle:
    """An axis-aligned rectangle with integer position and size."""

    x: int = 0
    y: int = 0
    width: int = 0
    height: int = 0

    def area(self) -> int:
        return self.width * self.height

    def bounded_to(self, other: Rectangle) -> Rectangle:
        """Return the intersection with other; an empty overlap has zero size."""
        left = max(self.x, other.x)
        top = max(self.y, other.y)
        right = min(self.x + self.width, other.x + other.width)
        bottom = min(self.y + self.height, other.y + other.height)
        return Rectangle(left, top, max(right - left, 0), max(bottom - top, 0))


@dataclass
class Detection:
    """One detected object: its category, label, confidence and bounding box."""

    category: int
    name: str
    confidence: float
    box: Rectangle

    def to_string(self) -> str:
        box = self.box
        return (
            f"{self.name}[{self.category}] ({_format_confidence(self.confidence)}) "
            f"@ {box.x},{box.y} {box.width}x{box.height}"
        )


@dataclass
class Segmentation:
    """A per-pixel category map of width x height, one byte per pixel."""

    width: int
    height: int
    labels: list[str] = field(default_factory=list)
    segmentation: bytes = b""


def read_labels(path: str | PathLike[str], padding: int = 0, skip_first: bool = False) -> list[str]:
    """Read one label per line.

    With skip_first the first line is discarded; with a padding the list is
    extended with empty labels up to a multiple of it.
    """
    try:
        with open(path, "rb") as f:
            data = f.read()
    except OSError as exc:
        raise OSError(f"Failed to load labels file {path}") from exc
    lines = data.split(b"\n")
    if lines and lines[-1] == b"":
        lines.pop()
    labels = [line.decode("utf-8", errors="replace") for line in lines]
    if skip_first:
        labels = labels[1:]
    if padding > 0:
        labels.extend([""] * (-len(labels) % padding))
    return labels


def top_results(
    prediction: Any,
    num_results: int,
    threshold_low: float = 0.1,
    threshold_high: float = 0.2,
    previous: Iterable[int] = (),
) -> list[tuple[float, int]]:
    """Pick the most confident classes from 8-bit classifier outputs.

    A class is considered if its confidence reaches threshold_high, or reaches
    threshold_low and its index is among previous (the last call's results).
    Returns at most num_results (confidence, index) pairs, most confident first.
    """
    kept = set(previous)
    low = np.float32(threshold_low)
    high = np.float32(threshold_high)
    heap: list[tuple[float, int]] = []
    values = np.asarray(prediction, dtype=np.uint8).ravel()
    for index, value in enumerate(values.tolist()):
        confidence = np.float32(value / 255.0)
        if confidence < low:
            continue
        if confidence >= high or index in kept:
            heapq.heappush(heap, (float(confidence), index))
            if len(heap) > num_results:
                heapq.heappop(heap)
    return sorted(heap, reverse=True)


def _short_label(label: str) -> str:
    # Take the text after the first ':' up to the first ',' that follows it.
    start = label.find(":") + 1
    end = label.find(",")
    if end < start:
        return label[start:]
    return label[start:end]


def classification_annotation(results: Iterable[tuple[str, float]]) -> str:
    """Build the annotation text for (label, confidence) classification results."""
    parts = [f"{_short_label(label)} {_format_confidence(conf)}" for label, conf in results]
    return "Detected: " + ", ".join(parts)


def merge_detection(results: list[Detection], detection: Detection, overlap_threshold: float) -> bool:
    """Add detection to results unless it overlaps one of the same category.

    On overlap the more confident of the two is kept in place and True is
    returned; otherwise the detection is appended and False is returned.
    """
    for k, prev in enumerate(results):
        if prev.category != detection.category:
            continue
        prev_area = prev.box.area()
        new_area = detection.box.area()
        overlap = prev.box.bounded_to(detection.box).area()
        if overlap > overlap_threshold * prev_area or overlap > overlap_threshold * new_area:
            if detection.confidence > prev.confidence:
                results[k] = detection
            return True
    results.append(detection)
    return False


def _clamp(value: int, lo: int, hi: int) -> int:
    return max(lo, min(value, hi))


def boxes_to_detections(
    boxes: Any,
    classes: Any,
    scores: Any,
    labels: Sequence[str],
    confidence_threshold: float = 0.5,
    overlap_threshold: float = 0.5,
    tf_size: tuple[int, int] = OBJECT_DETECT_SIZE,
    lores_size: tuple[int, int] = OBJECT_DETECT_SIZE,
    main_size: tuple[int, int] = OBJECT_DETECT_SIZE,
) -> list[Detection]:
    """Turn detector outputs into detections in main image coordinates.

    boxes holds (ymin, xmin, ymax, xmax) per detection as fractions of the
    network input, which is a centre crop of the lores image; the lores image
    is a scaling of the main image. Sizes are (width, height).
    """
    tf_w, tf_h = tf_size
    lores_w, lores_h = lores_size
    main_w, main_h = main_size
    if lores_w < tf_w or lores_h < tf_h:
        raise ValueError("low resolution image smaller than the network input")
    box_array = np.asarray(boxes, dtype=np.float32).reshape(-1, 4)
    class_array = np.asarray(classes, dtype=np.float32).ravel()
    score_array = np.asarray(scores, dtype=np.float32).ravel()
    count = len(box_array)
    if class_array.size < count or score_array.size < count:
        raise ValueError("fewer classes or scores than boxes")

    threshold = np.float32(confidence_threshold)
    fw, fh = np.float32(tf_w), np.float32(tf_h)
    results: list[Detection] = []
    for box, cls, score in zip(box_array, class_array[:count], score_array[:count]):
        if score < threshold:
            continue
        y = _clamp(int(fh * box[0]), 0, tf_h)
        x = _clamp(int(fw * box[1]), 0, tf_w)
        h = _clamp(int(fh * box[2] - np.float32(y)), 0, tf_h)
        w = _clamp(int(fw * box[3] - np.float32(x)), 0, tf_w)
        y += (lores_h - tf_h) // 2
        x += (lores_w - tf_w) // 2
        y = y * main_h // lores_h
        x = x * main_w // lores_w
        h = h * main_h // lores_h
        w = w * main_w // lores_w

        category = int(cls)
        if not 0 <= category < len(labels):
            raise ValueError(f"class index {category} has no label")
        detection = Detection(category, labels[category], float(score), Rectangle(x, y, w, h))
        merge_detection(results, detection, overlap_threshold)
    return results


def interpret_pose(
    heatmaps: Any, offsets: Any, main_width: int, main_height: int
) -> tuple[list[tuple[int, int]], list[float]]:
    """Find each body feature's location in the main image and its confidence.

    heatmaps holds HEATMAP_DIMS x HEATMAP_DIMS x FEATURE_SIZE values and offsets
    twice as many (y offsets, then x offsets, per grid cell). Returns the (x, y)
    locations and the confidences, one per feature.
    """
    cells = HEATMAP_DIMS * HEATMAP_DIMS
    heat = np.asarray(heatmaps, dtype=np.float32).ravel()
    off = np.asarray(offsets, dtype=np.float32).ravel()
    if heat.size < cells * FEATURE_SIZE or off.size < cells * FEATURE_SIZE * 2:
        raise ValueError("unexpected pose model output size")
    heat_grid = heat[: cells * FEATURE_SIZE].reshape(cells, FEATURE_SIZE)
    off_grid = off[: cells * FEATURE_SIZE * 2].reshape(cells, FEATURE_SIZE * 2)

    best_cells = np.argmax(heat_grid, axis=0)
    locations: list[tuple[int, int]] = []
    confidences: list[float] = []
    for feature, cell in enumerate(best_cells.tolist()):
        y, x = divmod(cell, HEATMAP_DIMS)
        confidences.append(float(heat_grid[cell, feature]))
        loc_y = int(np.float32(y * main_height // (HEATMAP_DIMS - 1)) + off_grid[cell, feature])
        loc_x = int(
            np.float32(x * main_width // (HEATMAP_DIMS - 1)) + off_grid[cell, feature + FEATURE_SIZE]
        )
        locations.append((loc_x, loc_y))
    return locations, confidences


def segment(output: Any, width: int, height: int, num_categories: int) -> tuple[bytes, list[int]]:
    """Pick the most confident category for every pixel.

    Returns the category map (one byte per pixel, row by row) and the number
    of pixels assigned to each category.
    """
    if num_categories <= 0:
        raise ValueError("need at least one category")
    pixels = width * height
    data = np.asarray(output, dtype=np.float32).ravel()
    if data.size < pixels * num_categories:
        raise ValueError("segmentation output smaller than the image")
    scores = data[: pixels * num_categories].reshape(pixels, num_categories)
    indices = np.argmax(scores, axis=1)
    counts = np.bincount(indices, minlength=num_categories)
    return indices.astype(np.uint8).tobytes(), counts.tolist()