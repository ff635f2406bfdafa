"""
aiko - AI conversation orchestration engine.

Streams replies from OpenAI-compatible and Gemini providers, keeps history
inside each model's context budget, stages "deep thinking" prompts and turns
videos into text through per-frame vision calls.
"""

from pathlib import Path
import tomllib
from importlib.metadata import version, PackageNotFoundError


def _resolve_version() -> str:
    """Resolve the aiko version.

    Priority:
    1) Local source checkout version from pyproject.toml (if present)
    2) Installed package metadata (aiko-engine)
    3) Safe fallback
    """
    try:
        root = Path(__file__).resolve().parent.parent
        pyproject = root / "pyproject.toml"
        if pyproject.exists():
            data = tomllib.loads(pyproject.read_text(encoding="utf-8"))
            ver = data.get("project", {}).get("version")
            if isinstance(ver, str) and ver.strip():
                return ver.strip()
    except (OSError, tomllib.TOMLDecodeError):
        pass

    try:
        return version("aiko-engine")
    except PackageNotFoundError:
        return "0.0.0"


__version__ = _resolve_version()
