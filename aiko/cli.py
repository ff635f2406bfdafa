"""
aiko.cli - Command-line interface for the aiko conversation engine.

Usage:
    aiko chat                      Interactive chat (Ctrl-C cancels a reply)
    aiko chat --level 3            Chat with deep thinking
    aiko models                    Show the provider/model catalog
    aiko sessions                  List saved conversations
    aiko setup                     Store provider, model and API key
    aiko analyze-video PATH        Describe a video frame by frame
"""

from __future__ import annotations

import asyncio
import logging
import shlex
import signal
from pathlib import Path

import click
from rich.console import Console

from aiko import __version__
from aiko.core.cancellation import CancellationToken
from aiko.core.errors import AikoError
from aiko.core.images import EncodedImage, load_image
from aiko.core.models import AppConfig
from aiko.engine import EngineContext, JobController
from aiko.engine.thinking import get_thinking_level
from aiko.engine.video import VIDEO_PRESETS, DecordFrameSource, VideoFrameSampler
from aiko.providers.catalog import PROVIDER_DEFAULTS, ProviderCatalog
from aiko.renderer import (
    SLASH_COMMANDS,
    ConsoleChatView,
    print_help,
    render_banner,
    render_error,
    render_info,
    render_models_table,
    render_sessions_table,
    render_success,
)

console = Console()
logger = logging.getLogger("aiko.cli")


def _setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(name)s] %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
    )


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.version_option(__version__, prog_name="aiko")
def main(verbose: bool) -> None:
    """aiko - multi-provider AI chat with deep thinking and video analysis."""
    _setup_logging(verbose)


# ---------------------------------------------------------------------------
# chat
# ---------------------------------------------------------------------------

@main.command()
@click.option("--provider", default=None, help="Provider override (OPENAI, GEMINI, DEEPSEEK, QWEN).")
@click.option("--model", default=None, help="Model override.")
@click.option("--level", type=click.IntRange(0, 4), default=None, help="Thinking level 0-4.")
@click.option("--session", "session_id", type=int, default=None, help="Resume a saved session.")
@click.option("--new", "new_session", is_flag=True, help="Start a new session instead of resuming the latest.")
def chat(
    provider: str | None,
    model: str | None,
    level: int | None,
    session_id: int | None,
    new_session: bool,
) -> None:
    """Start an interactive chat."""
    config = AppConfig.load()
    if provider:
        config.provider = provider.upper()
        if not model:
            config.model = ProviderCatalog.load(config.catalog_path).default_model(config.provider)
    if model:
        config.model = model
    if level is not None:
        config.thinking_level = level
    try:
        asyncio.run(_chat_loop(config, session_id, new_session))
    except AikoError as exc:
        render_error(exc.user_note())
        raise SystemExit(1)
    except KeyError as exc:
        render_error(str(exc.args[0]))
        raise SystemExit(1)


async def _chat_loop(config: AppConfig, session_id: int | None, new_session: bool) -> None:
    from prompt_toolkit import PromptSession
    from prompt_toolkit.completion import WordCompleter

    ctx = EngineContext.from_config(config)
    view = ConsoleChatView()
    controller = JobController(ctx, view)

    if session_id is not None:
        session = controller.open_session(session_id)
    else:
        latest = None if new_session else ctx.store.latest_session()
        session = controller.open_session(latest.id) if latest else controller.new_session()

    render_banner(__version__, config.provider, config.model, get_thinking_level(config.thinking_level).name)
    if session.messages:
        render_info(f"Resumed session {session.id} ({len(session.messages)} messages)")

    prompt_session = PromptSession(
        completer=WordCompleter([c.split()[0] for c in SLASH_COMMANDS], sentence=True),
    )
    pending_images: list[EncodedImage] = []

    try:
        while True:
            try:
                line = (await prompt_session.prompt_async("› ")).strip()
            except (EOFError, KeyboardInterrupt):
                break
            if not line:
                continue

            if line.startswith("/"):
                result = await _handle_slash(line, controller, session.id, pending_images)
                if result is None:
                    break
                session_id = result
                session = controller.session(session_id)
                continue

            job = await controller.submit(
                session.id,
                line,
                images=tuple(pending_images),
                thinking_level=config.thinking_level,
            )
            pending_images.clear()
            await _wait_cancellable(controller, job)
    finally:
        await controller.aclose()


async def _wait_cancellable(controller: JobController, job) -> None:
    """Wait for *job*; SIGINT cancels it instead of killing the REPL."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, controller.cancel, job.id)
        installed = True
    except (NotImplementedError, RuntimeError):
        installed = False
    try:
        await controller.wait(job)
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


async def _handle_slash(
    line: str,
    controller: JobController,
    session_id: int,
    pending_images: list[EncodedImage],
) -> int | None:
    """Run one slash command. Returns the active session id, or None to quit."""
    try:
        parts = shlex.split(line)
    except ValueError as exc:
        render_error(f"Could not parse command: {exc}")
        return session_id
    cmd, args = parts[0].lower(), parts[1:]
    config = controller.ctx.config

    if cmd in ("/quit", "/exit"):
        return None
    if cmd == "/help":
        print_help()
    elif cmd == "/new":
        session = controller.new_session(" ".join(args) or "New chat")
        render_success(f"New chat started (session {session.id})")
        return session.id
    elif cmd == "/level":
        try:
            level = get_thinking_level(int(args[0]))
        except (IndexError, ValueError) as exc:
            render_error(f"Usage: /level 0-4 ({exc})")
        else:
            config.thinking_level = level.level
            config.save()
            render_success(f"Thinking level: {level.level} ({level.name} - {level.description})")
    elif cmd == "/provider":
        name = args[0].upper() if args else ""
        if name not in PROVIDER_DEFAULTS:
            render_error(f"Unknown provider. Choose one of: {', '.join(PROVIDER_DEFAULTS)}")
        else:
            config.provider = name
            config.model = controller.ctx.catalog.default_model(name)
            config.save()
            render_success(f"Provider: {name} ({config.model})")
    elif cmd == "/model":
        if not args:
            models = controller.ctx.profile(config.provider).models
            render_info(f"Models for {config.provider}: {', '.join(models)}")
        else:
            config.model = args[0]
            config.save()
            render_success(f"Model: {config.model}")
    elif cmd == "/image":
        try:
            pending_images.append(load_image(Path(args[0])))
        except (IndexError, OSError, ValueError) as exc:
            render_error(f"Could not attach image: {exc}")
        else:
            render_success(f"Attached {args[0]} ({len(pending_images)} pending)")
    elif cmd == "/video":
        if not args:
            render_error("Usage: /video PATH [quick|standard|detailed]")
            return session_id
        preset = VIDEO_PRESETS.get(args[1] if len(args) > 1 else "standard")
        if preset is None:
            render_error(f"Unknown preset. Choose one of: {', '.join(VIDEO_PRESETS)}")
            return session_id
        try:
            source = DecordFrameSource(args[0])
        except ImportError:
            render_error("Video support needs decord: pip install 'aiko-engine[video]'")
            return session_id
        except (OSError, ValueError) as exc:
            render_error(f"Could not open video: {exc}")
            return session_id
        job = await controller.submit(
            session_id,
            " ".join(args[2:]),
            video=source,
            video_config=preset,
        )
        await _wait_cancellable(controller, job)
    else:
        render_error(f"Unknown command {cmd}. Type /help.")
    return session_id


# ---------------------------------------------------------------------------
# models
# ---------------------------------------------------------------------------

@main.command()
def models() -> None:
    """Show the provider/model catalog with token limits."""
    config = AppConfig.load()
    catalog = ProviderCatalog.load(config.catalog_path)
    rows = []
    for provider in catalog.providers():
        extra = config.custom_models.get(provider, [])
        for model in (*catalog.models_for(provider), *extra):
            is_default = provider == config.provider and model == config.model
            rows.append((provider, model, catalog.limits_for(provider, model), is_default))
    render_models_table(rows)


# ---------------------------------------------------------------------------
# sessions
# ---------------------------------------------------------------------------

@main.command()
def sessions() -> None:
    """List saved conversations, newest first."""
    from aiko.core.database import SQLiteMessageStore

    config = AppConfig.load()
    store = SQLiteMessageStore(config.resolved_db_path())
    try:
        render_sessions_table(store.list_sessions())
    finally:
        store.close()


# ---------------------------------------------------------------------------
# setup
# ---------------------------------------------------------------------------

@main.command()
@click.option(
    "--provider",
    type=click.Choice(list(PROVIDER_DEFAULTS), case_sensitive=False),
    prompt="Provider",
    help="Which provider to use.",
)
@click.option("--model", default="", help="Model (uses the provider's first catalog model if empty).")
@click.option("--api-key", default="", help="API key to store for this provider.")
@click.option("--add-model", multiple=True, help="Extra model name to add for this provider.")
def setup(provider: str, model: str, api_key: str, add_model: tuple[str, ...]) -> None:
    """Store provider, model, API key and custom models."""
    provider = provider.upper()
    config = AppConfig.load()
    catalog = ProviderCatalog.load(config.catalog_path)

    if add_model:
        known = config.custom_models.setdefault(provider, [])
        known.extend(m for m in add_model if m not in known)
    config.provider = provider
    config.model = model or catalog.default_model(provider)

    if not api_key and not config.api_key_for(provider):
        api_key = click.prompt(f"{provider} API key", default="", hide_input=True, show_default=False)
    if api_key:
        config.api_keys[provider] = api_key

    path = config.save()
    render_success(f"Saved {path}")
    console.print(f"  Provider:  [cyan]{provider}[/cyan]")
    console.print(f"  Model:     [cyan]{config.model}[/cyan]")
    if config.api_key_for(provider):
        render_success(f"{provider} API key is set")
    else:
        render_error(f"No API key for {provider}; chat requests will fail until one is set")


# ---------------------------------------------------------------------------
# analyze-video
# ---------------------------------------------------------------------------

@main.command("analyze-video")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--preset",
    type=click.Choice(list(VIDEO_PRESETS)),
    default="standard",
    help="Sampling preset.",
)
def analyze_video(path: Path, preset: str) -> None:
    """Sample a video, describe each frame and print the report."""
    try:
        source = DecordFrameSource(path)
    except ImportError:
        render_error("Video support needs decord: pip install 'aiko-engine[video]'")
        raise SystemExit(1)
    except ValueError as exc:
        render_error(str(exc))
        raise SystemExit(1)
    asyncio.run(_analyze_video(source, preset))


async def _analyze_video(source: DecordFrameSource, preset: str) -> None:
    ctx = EngineContext.from_config()
    token = CancellationToken()
    sampler = VideoFrameSampler(ctx.vision())
    if not sampler.vision.available:
        render_error("Set GEMINI_API_KEY or OPENAI_API_KEY to describe frames")

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, token.cancel)
    except (NotImplementedError, RuntimeError):
        pass

    def progress(percent: int, index: int, status: str) -> None:
        render_info(f"[{percent:3d}%] {status}")

    try:
        analysis = await sampler.analyze(source, VIDEO_PRESETS[preset], progress, token)
    finally:
        await ctx.aclose()
    console.print(analysis.text)


if __name__ == "__main__":
    main()
