# picampipe

Building blocks for a camera application's frame pipeline: piecewise linear
functions and histograms, post-processing stages that work on YUV420 frames,
outputs for encoded video, and helpers that turn neural-network outputs into
detections, classifications, poses and segmentations.

## Installation

```
pip install picampipe
```

To run the test suite:

```
pip install "picampipe[test]"
pytest
```

## What is inside

- `picampipe.pwl`: the `Pwl` piecewise linear function, with `Point`,
  `Interval` and `PerpType`. It can be built with `Pwl.from_values`,
  evaluated (`eval`, `eval_with_span`), composed, combined with `map2` and
  `combine`, inverted, extended with `match_domain`, scaled with `*=` and
  tabulated with `generate_lut`.
- `picampipe.histogram`: `Histogram`, which gives cumulative frequencies,
  fractional quantiles and inter-quantile means.
- `picampipe.stage`: the `PostProcessingStage` base class, `StreamInfo`,
  `Streams`, `StreamConfiguration`, `CompletedRequest`, the YUV420-to-RGB
  helper `yuv420_to_rgb` (which crops from the centre of the source),
  `execution_time`, and a registry of stages (`register_stage`,
  `get_post_processing_stages`).
- `picampipe.negate`: `NegateStage` (registered as `"negate"`), which inverts
  every byte of the main image in place.
- `picampipe.motion_detect`: `MotionDetectStage` (registered as
  `"motion_detect"`), configured by `MotionDetectConfig`. It compares a region
  of successive low resolution frames and stores `motion_detect.result` in
  the request's `post_process_metadata`.
- `picampipe.hdr`: `HdrStage` (registered as `"hdr"`), `HdrImage` and the
  configuration classes `HdrConfig`, `LpFilterConfig`, `TonemapPoint`,
  `GlobalTonemapConfig` and `LocalTonemapConfig`. The stage adds up several
  still frames, dropping all but the last, then applies an edge-preserving low
  pass filter and global and local tone mapping.
- `picampipe.output`: `create_output` picks a `NetOutput` (for `udp://` or
  `tcp://` addresses), a `CircularOutput`, a `FileOutput` or a plain `Output`
  that discards frames, according to `OutputOptions`. Outputs wait for a
  keyframe, can be paused and resumed with `signal`, can save timestamps to a
  file, and work as context managers. `CircularBuffer` and
  `parse_network_address` are available on their own.
- `picampipe.detection`: `Rectangle`, `Detection` and `Segmentation`, plus
  `read_labels`, `top_results`, `classification_annotation`,
  `boxes_to_detections`, `merge_detection`, `interpret_pose` and `segment`.

## Example

```python
from picampipe.pwl import Pwl
from picampipe.histogram import Histogram

curve = Pwl.from_values([0, 0, 100, 200, 255, 255])
lut = curve.generate_lut(int)
print(lut[50])          # 100

hist = Histogram([0, 10, 10, 0])
print(hist.quantile(0.5))  # 2.0
```

Writing frames to a numbered series of files, starting a new file at the
first keyframe after every 10 seconds:

```python
from picampipe.output import OutputOptions, create_output

options = OutputOptions(output="clip%04d.h264", segment=10000)
with create_output(options) as out:
    out.output_ready(b"\x00\x00\x00\x01...", 0, keyframe=True)
```

## What it does not do

- It does not talk to a camera. Stages work on byte buffers handed to them in
  a `CompletedRequest`; capturing frames and encoding video are left to the
  application.
- It has no preview window and no command-line program.
- It does not run neural networks. The helpers in `picampipe.detection` only
  interpret the output arrays a model produced.
- It does not write JPEG files. `HdrStage` accepts an optional `jpeg_saver`
  callable for saving each constituent frame and otherwise skips that step.