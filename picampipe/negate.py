"""A stage that negates every byte of the main image."""

from __future__ import annotations

import numpy as np

from picampipe.stage import MAIN, CompletedRequest, PostProcessingStage, Streams, register_stage


@register_stage("negate")
class NegateStage(PostProcessingStage):
    """Invert all pixel values of the main stream in place."""

    name = "negate"

    def __init__(self) -> None:
        self._stream: str | None = None

    def configure(self, streams: Streams) -> None:
        self._stream = MAIN if streams.main is not None else None

    def process(self, request: CompletedRequest) -> bool:
        if self._stream is None:
            return False
        pixels = np.frombuffer(request.buffers[self._stream], dtype=np.uint8)
        np.bitwise_xor(pixels, 0xFF, out=pixels)
        return False