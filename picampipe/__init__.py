"""Camera frame post-processing stages, encoded-video outputs and network result helpers."""

__version__ = "0.1.0"

__all__ = [
    "detection",
    "hdr",
    "histogram",
    "motion_detect",
    "negate",
    "output",
    "pwl",
    "stage",
]