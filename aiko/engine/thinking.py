"""
aiko.engine.thinking - Staged "deep thinking" prompt escalation.

Levels 1-4 show a fixed list of progress steps with a short cancellable
pause after each, then rewrite the prompt to ask for more detail from more
angles. Level 0 passes the prompt through untouched.
"""

from __future__ import annotations

import logging
from typing import Callable

from aiko.core.cancellation import CancellationToken
from aiko.core.models import ThinkingLevel

logger = logging.getLogger("aiko.thinking")

# (step text, delay in seconds)
_LIGHT_STEPS = (
    ("🔍 Quick problem analysis...", 0.8),
    ("💡 Looking for a basic solution...", 0.7),
    ("⚡ Preparing a practical answer...", 0.5),
)

_MEDIUM_STEPS = (
    ("🔍 Analyzing the problem from 2 angles...", 1.0),
    ("📚 Gathering relevant information...", 1.0),
    ("💡 Developing 2 alternative solutions...", 1.0),
    ("⚖️ Comparing the solutions...", 0.8),
    ("🎯 Choosing the best solution...", 0.6),
)

_DEEP_STEPS = (
    ("🔍 Analyzing the problem in 3 dimensions...", 1.2),
    ("📚 Researching in detail...", 0.0),
    ("   • Reviewing technical requirements", 1.0),
    ("   • Researching best practices", 1.0),
    ("💡 Developing 3+ alternative solutions...", 1.2),
    ("⚖️ Listing pros and cons of each solution...", 1.0),
    ("🎯 Selecting the most optimized solution...", 0.8),
    ("📝 Preparing a detailed implementation plan...", 0.6),
)

_VERY_DEEP_STEPS = (
    ("🔍 In-depth analysis from 5 different angles...", 1.5),
    ("📚 Running a thorough literature review...", 0.0),
    ("   • Reviewing academic sources", 1.2),
    ("   • Researching industry standards", 1.2),
    ("   • Evaluating case studies", 1.2),
    ("💡 Developing 5+ innovative solutions...", 1.5),
    ("⚖️ Evaluating each solution on 5 criteria...", 0.0),
    ("   • Performance", 1.0),
    ("   • Scalability", 1.0),
    ("   • Maintainability", 1.0),
    ("   • Security", 1.0),
    ("   • Cost effectiveness", 1.0),
    ("🧪 Checking edge cases and failure modes...", 1.0),
    ("🎯 Selecting the best combination of solutions...", 1.0),
    ("📝 Drafting a detailed roadmap and implementation plan...", 0.8),
)

THINKING_LEVELS: tuple[ThinkingLevel, ...] = (
    ThinkingLevel(level=0, name="Off", description="Normal mode", thinking_time_ms=0, detail_multiplier=1.0),
    ThinkingLevel(
        level=1, name="Light", description="Quick analysis", thinking_time_ms=2000,
        detail_multiplier=1.3, extra_detail_pct=30, angles=2, steps=_LIGHT_STEPS,
    ),
    ThinkingLevel(
        level=2, name="Medium", description="Balanced analysis", thinking_time_ms=4000,
        detail_multiplier=1.7, extra_detail_pct=70, angles=3, steps=_MEDIUM_STEPS,
    ),
    ThinkingLevel(
        level=3, name="Deep", description="Comprehensive analysis", thinking_time_ms=7000,
        detail_multiplier=2.2, extra_detail_pct=120, angles=4, steps=_DEEP_STEPS,
    ),
    ThinkingLevel(
        level=4, name="Very Deep", description="Very comprehensive analysis", thinking_time_ms=10000,
        detail_multiplier=3.0, extra_detail_pct=200, angles=5, steps=_VERY_DEEP_STEPS,
    ),
)

# Extra bullet instructions appended by the rewrite, per level
_LEVEL_INSTRUCTIONS = {
    1: ("Give a practical solution", "Be short and to the point"),
    2: (
        "List the pros and cons of each solution",
        "Pick the best solution and explain why",
        "Order the implementation steps",
    ),
    3: (
        "Evaluate each solution on 5 criteria",
        "Include best practices and patterns",
        "Provide a detailed implementation plan",
        "Name possible risks and how to handle them",
    ),
    4: (
        "Use academic references and case studies",
        "Include industry standards and best practices",
        "Cover multiple scenarios and edge cases",
        "Provide a detailed ROI analysis and optimization ideas",
        "Plan for the long term",
    ),
}


def get_thinking_level(level: int) -> ThinkingLevel:
    if not 0 <= level < len(THINKING_LEVELS):
        raise ValueError(f"Thinking level must be between 0 and {len(THINKING_LEVELS) - 1}, got {level}")
    return THINKING_LEVELS[level]


class PromptEscalator:
    """Runs a level's staged steps and rewrites the prompt.

    ``delay_scale`` shrinks the staged pauses; tests run with ``0``.
    """

    def __init__(self, delay_scale: float = 1.0) -> None:
        self.delay_scale = delay_scale

    async def escalate(
        self,
        prompt: str,
        level: int,
        token: CancellationToken,
        on_step: Callable[[str], None] | None = None,
    ) -> str:
        tier = get_thinking_level(level)
        if tier.level == 0:
            return prompt

        logger.info("Thinking level %d (%s): %d steps", tier.level, tier.name, len(tier.steps))
        for text, delay in tier.steps:
            token.raise_if_cancelled()
            if on_step is not None:
                on_step(text)
            await token.sleep(delay * self.delay_scale)
        token.raise_if_cancelled()
        return self.rewrite(prompt, level)

    @staticmethod
    def rewrite(prompt: str, level: int) -> str:
        tier = get_thinking_level(level)
        if tier.level == 0:
            return prompt
        angles = f"{tier.angles}+" if tier.level >= 3 else str(tier.angles)
        bullets = [f"Evaluate from {angles} different angles", *_LEVEL_INSTRUCTIONS[tier.level]]
        lines = [
            f"🧠 {tier.name.upper()} THINKING MODE",
            "",
            f"ORIGINAL QUESTION: {prompt}",
            "",
            f"INSTRUCTION: Answer this question in {tier.extra_detail_pct}% more detail.",
            *(f"- {b}" for b in bullets),
        ]
        return "\n".join(lines)
