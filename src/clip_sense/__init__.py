"""ClipSense: multi-signal title recognition for short media clips."""

__version__ = "0.1.0"
