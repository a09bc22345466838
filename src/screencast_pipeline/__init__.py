"""
Screencast processing pipeline.

Turns uploaded screen/camera/microphone recordings into one playable deliverable,
a thumbnail and (best-effort) subtitles, driven by a durable per-video job queue.
"""

__version__ = "0.4.0"
