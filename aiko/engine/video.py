"""
aiko.engine.video - Frame sampling and per-frame video analysis.

Frames are decoded in a worker thread, downscaled, described one at a time
by the ``VisionPreprocessor`` and folded into a single text report that the
job controller sends through the normal prompt pipeline.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Protocol

from PIL import Image

from aiko.core.cancellation import CancellationToken
from aiko.core.errors import FrameDecodeError, GenerationCancelled
from aiko.core.images import EncodedImage, encode_image
from aiko.core.models import FrameSample
from aiko.engine.vision import VisionPreprocessor

logger = logging.getLogger("aiko.video")

MIN_INTERVAL_MS = 1000
FRAME_FAILED_PLACEHOLDER = "[Frame could not be decoded]"

# (percent, frame index, status)
ProgressCallback = Callable[[int, int, str], None]


@dataclass(frozen=True)
class VideoAnalysisConfig:
    name: str
    frame_interval_ms: int
    max_frames: int
    description: str = ""


VIDEO_PRESETS: dict[str, VideoAnalysisConfig] = {
    "quick": VideoAnalysisConfig("quick", 8000, 4, "Quick overview, 4 frames"),
    "standard": VideoAnalysisConfig("standard", 5000, 10, "Standard analysis, 10 frames"),
    "detailed": VideoAnalysisConfig("detailed", 2000, 15, "Detailed analysis, 15 frames"),
}
DEFAULT_VIDEO_CONFIG = VIDEO_PRESETS["standard"]


class FrameSource(Protocol):
    """Anything that can hand out decoded frames by timestamp."""

    duration_ms: int
    resolution: str
    size_bytes: int

    def frame_at(self, offset_ms: int) -> Image.Image: ...


class DecordFrameSource:
    """``FrameSource`` backed by a decord ``VideoReader`` (``pip install aiko-engine[video]``)."""

    def __init__(self, path: Path | str) -> None:
        from decord import VideoReader, cpu

        self.path = Path(path)
        try:
            self._reader = VideoReader(str(self.path), ctx=cpu(0), num_threads=1)
        except Exception as exc:  # decord raises its own DECORDError hierarchy
            raise ValueError(f"Cannot open video {self.path}: {exc}") from exc
        self._fps = float(self._reader.get_avg_fps()) or 1.0
        self._frame_count = len(self._reader)
        self.duration_ms = int(self._frame_count / self._fps * 1000)
        height, width = self._reader[0].shape[:2] if self._frame_count else (0, 0)
        self.resolution = f"{width}x{height}"
        self.size_bytes = self.path.stat().st_size

    def frame_at(self, offset_ms: int) -> Image.Image:
        index = min(int(offset_ms / 1000 * self._fps), max(self._frame_count - 1, 0))
        try:
            array = self._reader[index].asnumpy()
        except Exception as exc:  # decord raises its own DECORDError hierarchy
            raise FrameDecodeError(offset_ms, str(exc)) from exc
        return Image.fromarray(array).convert("RGB")


@dataclass(frozen=True)
class VideoAnalysis:
    text: str
    frames: tuple[FrameSample, ...]
    complete: bool
    duration_ms: int
    resolution: str
    size_bytes: int


def _decode_frame(source: FrameSource, offset_ms: int) -> EncodedImage:
    try:
        return encode_image(source.frame_at(offset_ms))
    except FrameDecodeError:
        raise
    except Exception as exc:
        # Any decoder error costs one frame, not the whole video
        raise FrameDecodeError(offset_ms, str(exc)) from exc


def format_frame(sample: FrameSample) -> str:
    return f"Frame {sample.index} ({sample.offset_ms / 1000:.1f} s):\n{sample.description}"


def build_report(
    source: FrameSource,
    frames: tuple[FrameSample, ...],
    *,
    complete: bool,
    planned: int,
    analyzed_at: datetime | None = None,
) -> str:
    """Aggregate frame descriptions into the markdown report."""
    analyzed_at = analyzed_at or datetime.now()
    lines = [
        "🎥 **VIDEO ANALYSIS REPORT**",
        "",
        "**📊 BASIC INFO:**",
        f"• **Duration:** {source.duration_ms // 1000} seconds",
        f"• **Size:** {source.size_bytes / (1024 * 1024):.1f} MB",
        f"• **Resolution:** {source.resolution}",
        f"• **Analyzed at:** {analyzed_at:%d/%m/%Y %H:%M}",
        f"• **Analyzed frames:** {len(frames)}",
        "",
    ]
    if frames:
        lines.append("**🔍 FRAME ANALYSES:**")
        lines.append("\n---\n".join(format_frame(f) for f in frames))
        lines.append("")

    lines.append("**📋 SUMMARY:**")
    if complete:
        lines.append(f"The video was analyzed successfully. {len(frames)} frames were examined in detail.")
    else:
        lines.append(
            f"⚠️ Analysis incomplete: stopped after {len(frames)} of {planned} frames. "
            "The report covers only the frames above."
        )
    return "\n".join(lines)


class VideoFrameSampler:
    """Samples frame offsets and describes each frame sequentially."""

    def __init__(self, vision: VisionPreprocessor) -> None:
        self.vision = vision

    @staticmethod
    def sample(duration_ms: int, interval_ms: int, max_frames: int) -> list[int]:
        """Offsets ``0, interval, 2*interval, ...``, at most *max_frames* of them."""
        if duration_ms <= 0:
            return []
        interval_ms = max(interval_ms, MIN_INTERVAL_MS)
        max_frames = max(max_frames, 1)
        count = min(max_frames, math.ceil(duration_ms / interval_ms))
        return [i * interval_ms for i in range(count)]

    async def analyze(
        self,
        source: FrameSource,
        config: VideoAnalysisConfig = DEFAULT_VIDEO_CONFIG,
        progress: ProgressCallback | None = None,
        token: CancellationToken | None = None,
    ) -> VideoAnalysis:
        """
        Decode, describe and aggregate every sampled frame, in order.

        A frame that fails to decode gets a placeholder and the loop moves on.
        Cancelling *token* stops the loop and returns what was aggregated so
        far with ``complete=False``.
        """
        token = token or CancellationToken()
        offsets = self.sample(source.duration_ms, config.frame_interval_ms, config.max_frames)
        total = len(offsets)
        logger.info(
            "Analyzing video (%s): %d ms, %d frames planned",
            config.name,
            source.duration_ms,
            total,
        )

        def report(percent: int, index: int, status: str) -> None:
            if progress is not None:
                progress(percent, index, status)

        report(0, 0, "Preparing video...")
        frames: list[FrameSample] = []
        complete = True
        try:
            for index, offset in enumerate(offsets, start=1):
                token.raise_if_cancelled()
                try:
                    image = await token.race(asyncio.to_thread(_decode_frame, source, offset))
                except FrameDecodeError as exc:
                    logger.warning("Skipping frame %d: %s", index, exc)
                    description = FRAME_FAILED_PLACEHOLDER
                else:
                    description = await self.vision.describe(image, token=token)
                frames.append(FrameSample(index=index, offset_ms=offset, description=description))
                report(10 + index * 80 // total, index, f"Analyzed frame {index}/{total}")
        except GenerationCancelled:
            complete = False
            logger.info("Video analysis cancelled after %d of %d frames", len(frames), total)

        text = build_report(source, tuple(frames), complete=complete, planned=total)
        report(100, len(frames), "Analysis complete" if complete else "Analysis cancelled")
        return VideoAnalysis(
            text=text,
            frames=tuple(frames),
            complete=complete,
            duration_ms=source.duration_ms,
            resolution=source.resolution,
            size_bytes=source.size_bytes,
        )
