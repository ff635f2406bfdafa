"""
aiko.engine - The conversation engine.

Wires the provider catalog, history optimizer, vision and video
preprocessing, the deep-thinking escalator and the streaming clients into
single-flight generation jobs.

Usage:
    ctx = EngineContext.from_config()
    controller = JobController(ctx, view)
    session = controller.new_session()
    job = await controller.submit(session.id, "Explain asyncio.Lock")
    await controller.wait(job)
"""

__all__ = [
    "BoundedContext",
    "ChatView",
    "EngineContext",
    "GenerationJob",
    "HistoryOptimizer",
    "JobController",
    "NullView",
    "PromptEscalator",
    "ResponseAccumulator",
    "THINKING_LEVELS",
    "VIDEO_PRESETS",
    "VideoAnalysis",
    "VideoAnalysisConfig",
    "VideoFrameSampler",
    "VisionPreprocessor",
]

from aiko.engine.accumulator import ResponseAccumulator
from aiko.engine.context import EngineContext
from aiko.engine.history import BoundedContext, HistoryOptimizer
from aiko.engine.jobs import ChatView, GenerationJob, JobController, NullView
from aiko.engine.thinking import THINKING_LEVELS, PromptEscalator
from aiko.engine.video import (
    VIDEO_PRESETS,
    VideoAnalysis,
    VideoAnalysisConfig,
    VideoFrameSampler,
)
from aiko.engine.vision import VisionPreprocessor
