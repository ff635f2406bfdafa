"""
aiko.engine.jobs - Single-flight generation jobs.

``JobController`` runs at most one job per conversation. Submitting while a
job is running cancels it, waits for it to reach its terminal state, then
starts the new one. Each job runs this pipeline on the event loop:

    video analysis -> image routing -> thinking steps -> history fit
        -> streaming client -> accumulator -> finalize

Whatever happens, the job ends in exactly one terminal state, its
assistant message is written to the store once, and ``end_loading`` runs.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, AsyncIterator, Mapping, Protocol, Sequence

from aiko.core.cancellation import CancellationToken
from aiko.core.errors import AikoError, GenerationCancelled
from aiko.core.images import EncodedImage
from aiko.core.models import ConversationSession, JobState, Message, Role
from aiko.engine.accumulator import ResponseAccumulator
from aiko.engine.context import EngineContext
from aiko.engine.history import HistoryOptimizer
from aiko.engine.prompts import (
    DEFAULT_IMAGE_PROMPT,
    ocr_prompt,
    select_system_prompt,
    vision_user_prompt,
)
from aiko.engine.thinking import PromptEscalator, get_thinking_level
from aiko.engine.video import (
    DEFAULT_VIDEO_CONFIG,
    FrameSource,
    VideoAnalysisConfig,
    VideoFrameSampler,
)

logger = logging.getLogger("aiko.jobs")

# Providers without vision get at most this many image descriptions
MAX_OCR_IMAGES = 3

_DONE = object()


class ChatView(Protocol):
    """What the controller tells the UI. Every call happens on the event loop."""

    def append_chunk(self, text: str) -> None: ...

    def set_loading_state(self, message: str, cancellable: bool) -> None: ...

    def show_thinking_step(self, step: str) -> None: ...

    def notify_finalized(self, message: Message) -> None: ...

    def end_loading(self) -> None: ...


class NullView:
    """ChatView that ignores everything."""

    def append_chunk(self, text: str) -> None:
        pass

    def set_loading_state(self, message: str, cancellable: bool) -> None:
        pass

    def show_thinking_step(self, step: str) -> None:
        pass

    def notify_finalized(self, message: Message) -> None:
        pass

    def end_loading(self) -> None:
        pass


@dataclass(eq=False)
class GenerationJob:
    id: str
    session_id: int
    prompt: str
    provider: str
    model: str
    message: Message
    token: CancellationToken = field(default_factory=CancellationToken)
    images: tuple[EncodedImage, ...] = ()
    thinking_level: int = 0
    video: FrameSource | None = None
    video_config: VideoAnalysisConfig = DEFAULT_VIDEO_CONFIG
    state: JobState = JobState.RUNNING
    error: BaseException | None = None
    task: asyncio.Task | None = field(default=None, repr=False)
    _steps: list[str] = field(default_factory=list, repr=False)

    @property
    def thinking_steps(self) -> tuple[str, ...]:
        return tuple(self._steps)

    @property
    def done(self) -> bool:
        return self.state.is_terminal


async def _next_delta(stream: AsyncIterator[str]) -> Any:
    try:
        return await anext(stream)
    except StopAsyncIteration:
        return _DONE


class JobController:
    """Starts, cancels and sequences generation jobs for every session."""

    def __init__(
        self,
        ctx: EngineContext,
        view: ChatView | None = None,
        *,
        escalator: PromptEscalator | None = None,
        optimizer: HistoryOptimizer | None = None,
    ) -> None:
        self.ctx = ctx
        self.view: ChatView = view or NullView()
        self.escalator = escalator or PromptEscalator()
        self.optimizer = optimizer or HistoryOptimizer(ctx.catalog)
        self._sessions: dict[int, ConversationSession] = {}
        self._running: dict[int, GenerationJob] = {}
        self._locks: dict[int, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def new_session(self, name: str = "New chat") -> ConversationSession:
        session_id = self.ctx.store.create_session(name)
        session = ConversationSession(id=session_id, name=name)
        self._sessions[session_id] = session
        logger.info("New session %d", session_id)
        return self.session(session_id)

    def open_session(self, session_id: int) -> ConversationSession:
        """Load *session_id* and its messages from the store."""
        known = {s.id: s for s in self.ctx.store.list_sessions()}
        if session_id not in known:
            raise KeyError(f"No session with id {session_id}")
        session = ConversationSession(
            id=session_id,
            name=known[session_id].name,
            messages=self.ctx.store.get_messages_for_session(session_id),
        )
        self._sessions[session_id] = session
        return self.session(session_id)

    def session(self, session_id: int) -> ConversationSession:
        """Snapshot of a session; mutating it does not affect the controller."""
        return self._session(session_id).model_copy(deep=True)

    @property
    def running_jobs(self) -> Mapping[int, GenerationJob]:
        return MappingProxyType(self._running)

    def running_job(self, session_id: int) -> GenerationJob | None:
        return self._running.get(session_id)

    def _session(self, session_id: int) -> ConversationSession:
        if session_id not in self._sessions:
            self.open_session(session_id)
        return self._sessions[session_id]

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def submit(
        self,
        session_id: int,
        prompt: str,
        images: Sequence[EncodedImage] = (),
        thinking_level: int = 0,
        video: FrameSource | None = None,
        video_config: VideoAnalysisConfig = DEFAULT_VIDEO_CONFIG,
    ) -> GenerationJob:
        """
        Start a job for *session_id*, replacing any job already running there.

        Returns as soon as the job has started; use ``wait`` to await its end.
        """
        get_thinking_level(thinking_level)
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        async with lock:
            previous = self._running.get(session_id)
            if previous is not None:
                logger.info("Replacing running job %s in session %d", previous.id, session_id)
                previous.token.cancel("replaced by a new message")
                await self.wait(previous)

            session = self._session(session_id)
            history = [m for m in session.messages if m.text]

            user_text = prompt.strip()
            if not user_text and images:
                user_text = DEFAULT_IMAGE_PROMPT
            elif not user_text and video is not None:
                user_text = "Video analysis"
            if user_text:
                user_msg = Message(session_id=session_id, role=Role.USER, text=user_text)
                user_msg.id = self.ctx.store.insert_message(session_id, Role.USER, user_text)
                session.messages.append(user_msg)

            in_flight = Message(session_id=session_id, role=Role.ASSISTANT)
            session.messages.append(in_flight)

            job = GenerationJob(
                id=uuid.uuid4().hex[:8],
                session_id=session_id,
                prompt=prompt,
                provider=self.ctx.config.provider.upper(),
                model=self.ctx.config.model,
                message=in_flight,
                images=tuple(images),
                thinking_level=thinking_level,
                video=video,
                video_config=video_config,
            )
            self._running[session_id] = job
            job.task = asyncio.create_task(self._run(job, history), name=f"aiko-job-{job.id}")
            logger.info(
                "Job %s started: session=%d provider=%s model=%s level=%d",
                job.id,
                session_id,
                job.provider,
                job.model,
                thinking_level,
            )
        return job

    def cancel(self, job_id: str) -> bool:
        for job in self._running.values():
            if job.id == job_id:
                job.token.cancel()
                return True
        return False

    def cancel_session(self, session_id: int) -> bool:
        job = self._running.get(session_id)
        if job is None:
            return False
        job.token.cancel()
        return True

    async def wait(self, job: GenerationJob) -> GenerationJob:
        """Wait until *job* reaches its terminal state."""
        if job.task is not None:
            await asyncio.wait({job.task})
        return job

    async def aclose(self) -> None:
        jobs = list(self._running.values())
        for job in jobs:
            job.token.cancel("shutting down")
        for job in jobs:
            await self.wait(job)
        await self.ctx.aclose()

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _run(self, job: GenerationJob, history: list[Message]) -> None:
        try:
            acc = ResponseAccumulator(job.message, self.ctx.store, self.view)
            try:
                self.view.set_loading_state(
                    "Thinking deeply..." if job.thinking_level else "Preparing reply...",
                    cancellable=True,
                )
                await self._generate(job, history, acc)
                job.state = JobState.COMPLETED
            except GenerationCancelled:
                job.state = JobState.CANCELLED
            except asyncio.CancelledError:
                job.state = JobState.CANCELLED
                acc.finalize(job.state)
                raise
            except AikoError as exc:
                logger.warning("Job %s failed: %s", job.id, exc)
                job.state, job.error = JobState.FAILED, exc
            except Exception as exc:
                logger.exception("Job %s failed unexpectedly", job.id)
                job.state, job.error = JobState.FAILED, exc
            acc.finalize(job.state, job.error)
            logger.info("Job %s %s", job.id, job.state.value)
        finally:
            if self._running.get(job.session_id) is job:
                del self._running[job.session_id]
            self.view.end_loading()

    async def _generate(self, job: GenerationJob, history: list[Message], acc: ResponseAccumulator) -> None:
        token = job.token
        prompt = job.prompt.strip()
        images = list(job.images)
        if not prompt and not images and job.video is None:
            raise AikoError("Nothing to send")

        if job.video is not None:
            prompt = await self._analyze_video(job, prompt)
        if images and not prompt:
            prompt = DEFAULT_IMAGE_PROMPT

        system_prompt = select_system_prompt(
            job.provider,
            prompt,
            thinking_level=job.thinking_level,
            image_count=len(images),
        )

        if job.thinking_level:
            prompt = await self.escalator.escalate(
                prompt, job.thinking_level, token, on_step=lambda step: self._on_step(job, step)
            )

        if images:
            prompt, images = await self._route_images(job, prompt, images)

        token.raise_if_cancelled()
        client = self.ctx.client(job.provider, job.model)
        bounded = self.optimizer.fit(system_prompt, history, prompt, job.provider, job.model)
        stream = client.generate(
            bounded.system_prompt,
            bounded.history,
            bounded.prompt,
            images,
            token=token,
        )
        try:
            while True:
                delta = await token.race(_next_delta(stream))
                if delta is _DONE:
                    break
                acc.append(delta)
        finally:
            await stream.aclose()

    async def _analyze_video(self, job: GenerationJob, prompt: str) -> str:
        def progress(percent: int, index: int, status: str) -> None:
            self.view.set_loading_state(f"{status} ({percent}%)", cancellable=True)

        sampler = VideoFrameSampler(self.ctx.vision())
        analysis = await sampler.analyze(job.video, job.video_config, progress, job.token)
        job.token.raise_if_cancelled()
        request = prompt or "Summarize what happens in this video."
        return f"{request}\n\nVideo analysis:\n{analysis.text}"

    async def _route_images(
        self,
        job: GenerationJob,
        prompt: str,
        images: list[EncodedImage],
    ) -> tuple[str, list[EncodedImage]]:
        """Inline images for vision providers; describe them into the prompt otherwise."""
        profile = self.ctx.profile(job.provider)
        if profile.supports_vision:
            return vision_user_prompt(prompt, len(images)), images

        self.view.set_loading_state("Converting images to text...", cancellable=True)
        vision = self.ctx.vision()
        descriptions = []
        for image in images[:MAX_OCR_IMAGES]:
            descriptions.append(await vision.describe(image, token=job.token))
        return ocr_prompt(prompt, len(images), descriptions), []

    def _on_step(self, job: GenerationJob, step: str) -> None:
        job._steps.append(step)
        self.view.show_thinking_step(step)
