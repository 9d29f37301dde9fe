from picampipe.motion_detect import MotionDetectStage
from picampipe.stage import CompletedRequest, StreamInfo, Streams, get_post_processing_stages

SIZE = 16
LORES = StreamInfo(SIZE, SIZE, SIZE)


def frame(fill=100):
    return bytearray([fill]) * (SIZE * SIZE * 3 // 2)


def set_pixels(buf, coords, value):
    for x, y in coords:
        buf[y * SIZE + x] = value
    return buf


def configured(**params):
    params.setdefault("frame_period", 0)
    stage = MotionDetectStage()
    stage.read(params)
    stage.configure(Streams(main=StreamInfo(64, 64, 64), lores=LORES))
    return stage


def run(stage, buf, sequence=0):
    request = CompletedRequest(sequence=sequence, buffers={"lores": buf})
    dropped = stage.process(request)
    return dropped, request.post_process_metadata.get("motion_detect.result")


def test_first_frame_reports_no_motion():
    assert run(configured(), frame()) == (False, False)


def test_identical_frames_no_motion():
    stage = configured()
    run(stage, frame())
    assert run(stage, frame())[1] is False


def test_whole_frame_change_is_motion_then_stops():
    stage = configured()
    run(stage, frame(100))
    assert run(stage, frame(200))[1] is True
    assert run(stage, frame(200))[1] is False


def test_region_threshold_counts_pixels():
    stage = configured(region_threshold=0.5)
    coords = [(x, y) for y in range(SIZE) for x in range(SIZE)]
    run(stage, frame())
    assert run(stage, set_pixels(frame(), coords[:100], 200))[1] is False
    run(stage, frame())
    assert run(stage, set_pixels(frame(), coords[:200], 200))[1] is True


def test_small_difference_ignored():
    stage = configured()
    run(stage, frame(100))
    assert run(stage, frame(115))[1] is False
    run(stage, frame(100))
    assert run(stage, frame(125))[1] is True


def test_changes_outside_roi_ignored():
    stage = configured(roi_x=0.5, roi_width=0.5)
    left = [(x, y) for y in range(SIZE) for x in range(SIZE // 2)]
    right = [(x, y) for y in range(SIZE) for x in range(SIZE // 2, SIZE)]
    run(stage, frame())
    assert run(stage, set_pixels(frame(), left, 250))[1] is False
    run(stage, frame())
    assert run(stage, set_pixels(frame(), right, 250))[1] is True


def test_hskip_ignores_skipped_columns():
    stage = configured(hskip=2)
    odd = [(x, y) for y in range(SIZE) for x in range(1, SIZE, 2)]
    even = [(x, y) for y in range(SIZE) for x in range(0, SIZE, 2)]
    run(stage, frame())
    assert run(stage, set_pixels(frame(), odd, 250))[1] is False
    run(stage, frame())
    assert run(stage, set_pixels(frame(), even, 250))[1] is True


def test_roi_past_edge_is_clamped():
    stage = configured(roi_x=0.9, roi_width=1.0)
    edge = [(x, y) for y in range(SIZE) for x in (SIZE - 2, SIZE - 1)]
    first_column = [(0, y) for y in range(SIZE)]
    run(stage, frame())
    assert run(stage, set_pixels(frame(), first_column, 250))[1] is False
    run(stage, frame())
    assert run(stage, set_pixels(frame(), edge, 250))[1] is True


def test_frame_period_skips_frames():
    stage = configured(frame_period=5)
    assert run(stage, frame(), sequence=3) == (False, None)
    assert run(stage, frame(), sequence=5) == (False, False)


def test_no_lores_stream_does_nothing():
    stage = MotionDetectStage()
    stage.read({"frame_period": 0})
    stage.configure(Streams(main=StreamInfo(64, 64, 64)))
    assert run(stage, frame()) == (False, None)


def test_read_sets_config():
    stage = MotionDetectStage()
    stage.read({"hskip": 3, "verbose": 1, "difference_c": 4})
    assert stage.config.hskip == 3
    assert stage.config.verbose is True
    assert stage.config.difference_c == 4


def test_zero_skip_raised_to_one():
    stage = configured(hskip=0, vskip=-2)
    assert (stage.config.hskip, stage.config.vskip) == (1, 1)


def test_registered():
    assert get_post_processing_stages()["motion_detect"] is MotionDetectStage