from __future__ import annotations

import importlib

import pytest

MODULES = [
    "screencast_pipeline",
    "screencast_pipeline.cli",
    "screencast_pipeline.server",
    "screencast_pipeline.jobs.processor",
    "screencast_pipeline.ops.health",
    "screencast_pipeline.ops.heartbeat",
    "screencast_pipeline.ops.metrics",
    "screencast_pipeline.queue",
    "screencast_pipeline.queue.local_queue",
    "screencast_pipeline.queue.redis_queue",
    "screencast_pipeline.runtime.worker",
    "screencast_pipeline.stages.compose",
    "screencast_pipeline.stages.thumbnail",
    "screencast_pipeline.stages.transcription",
    "screencast_pipeline.storage.object_store",
    "screencast_pipeline.utils.subtitles",
    "screencast_pipeline.videos.service",
    "screencast_pipeline.videos.store",
]


@pytest.mark.parametrize("name", MODULES)
def test_imports(name: str) -> None:
    importlib.import_module(name)
