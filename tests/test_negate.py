import pytest

from picampipe.negate import NegateStage
from picampipe.stage import CompletedRequest, StreamInfo, Streams, get_post_processing_stages


def configured():
    stage = NegateStage()
    stage.configure(Streams(main=StreamInfo(4, 2, 4)))
    return stage


def test_negates_every_byte():
    buf = bytearray([0, 1, 128, 255, 10, 20, 30, 40, 50, 60, 70, 80])
    request = CompletedRequest(buffers={"main": buf})
    assert configured().process(request) is False
    assert buf == bytearray(255 - b for b in [0, 1, 128, 255, 10, 20, 30, 40, 50, 60, 70, 80])


def test_double_negation_restores():
    original = bytearray(range(64))
    buf = bytearray(original)
    stage = configured()
    stage.process(CompletedRequest(buffers={"main": buf}))
    stage.process(CompletedRequest(buffers={"main": buf}))
    assert buf == original


def test_read_only_buffer_rejected():
    with pytest.raises(ValueError):
        configured().process(CompletedRequest(buffers={"main": bytes(8)}))


def test_without_main_stream_buffer_untouched():
    stage = NegateStage()
    stage.configure(Streams())
    buf = bytearray(range(8))
    assert stage.process(CompletedRequest(buffers={"main": buf})) is False
    assert buf == bytearray(range(8))


def test_registered():
    assert get_post_processing_stages()["negate"] is NegateStage