"""
aiko.engine.prompts - System prompts and prompt templates.

Which system prompt a turn gets is decided by ``select_system_prompt``:
deep thinking first, then image-only description, then video analysis,
otherwise the provider's conversational prompt.
"""

from __future__ import annotations

from typing import Sequence

DEFAULT_IMAGE_PROMPT = "Analyze this image"

# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------

_BASE_SYSTEM_PROMPT = """\
CODING ASSISTANT - REMEMBER THE HISTORY:

CRITICAL INSTRUCTIONS:
1. Remember the WHOLE previous conversation
2. Reuse earlier code snippets
3. Keep the project context
4. Refer to earlier answers when a question repeats
5. Never say "I don't remember"

CODING:
- Remember earlier imports
- Keep class and function definitions
- Preserve the project structure"""

_PROVIDER_NOTES = {
    "OPENAI": "OpenAI model: use the long context, do not forget the history.",
    "GEMINI": "Gemini model: you have a 128K token window, use the whole history.",
    "DEEPSEEK": "DeepSeek model: keep the prior context and the code context.",
    "QWEN": "Qwen model: Chinese and English supported, remember the history.",
}


def system_prompt_for(provider: str) -> str:
    note = _PROVIDER_NOTES.get(provider.upper())
    return f"{_BASE_SYSTEM_PROMPT}\n\n{note}" if note else _BASE_SYSTEM_PROMPT


def deep_thinking_system_prompt(prompt: str) -> str:
    return f"""\
DEEP THINKING MODE - LIVE REASONING:

CRITICAL: show your reasoning STEP BY STEP.

HOW TO ANSWER:
1. Start with a "PROBLEM ANALYSIS:" heading and analyze the problem
2. Then share your thoughts under "THINKING PROCESS:"
3. List the alternatives under "EVALUATING SOLUTIONS:"
4. Give the pros and cons of each option under "COMPARISON:"
5. State your choice and why under "BEST SOLUTION:"
6. Finish with detailed steps under "IMPLEMENTATION PLAN:"

Think out loud so the user can follow the actual reasoning.

QUESTION: {prompt}"""


VIDEO_ANALYSIS_SYSTEM_PROMPT = """\
VIDEO ANALYSIS MODE - ANALYSIS ONLY:

CRITICAL INSTRUCTIONS:
1. Do not propose code, only analyze
2. Do not propose technical fixes, only observe
3. Analyze and summarize the video content only
4. Describe visual elements, motion and setting
5. Read out any visible text
6. Narrate the scenario and its likely meaning

IMPORTANT: ANALYSIS ONLY. No code, fixes, advice or technical detail."""

_VIDEO_MARKERS = ("video analysis", "video_analysis")


def mentions_video_analysis(prompt: str) -> bool:
    lowered = prompt.lower()
    return any(marker in lowered for marker in _VIDEO_MARKERS)


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------

VISION_INSTRUCTION = """\
Describe ONLY what you see in this image.
Do not comment, suggest anything or write code.
Explain only what is in the image.
If there is text, read it verbatim."""


def image_only_system_prompt(image_count: int) -> str:
    if image_count > 1:
        count_note = "Number multiple images as 1), 2), 3)."
    else:
        count_note = "Describe the single image clearly and briefly."
    return f"""\
IMAGE DESCRIPTION MODE (DEEP THINKING OFF)

INSTRUCTIONS:
- Describe only what is VISIBLE in the image, briefly.
- No suggestions, opinions, guesses, solutions or actions.
- No "if you like" or "I recommend" style nudges.
- Report objects, setting and text exactly as they are.
- If you are not sure, say so; do not make things up.
- {count_note}"""


def vision_user_prompt(prompt: str, image_count: int) -> str:
    lines = ["Describe ONLY what you see in these images. Do not add suggestions or opinions."]
    if image_count > 1:
        lines.append("Number each image as 1), 2), 3) and describe them separately.")
    else:
        lines.append("Describe the single image briefly and clearly.")
    if prompt.strip():
        lines.append(f"User request: {prompt}")
    return "\n".join(lines)


def ocr_prompt(prompt: str, image_count: int, descriptions: Sequence[str]) -> str:
    """Fold image descriptions into the prompt for providers without vision."""
    numbered = "\n\n".join(f"Image {i}: {text}" for i, text in enumerate(descriptions, start=1))
    return "\n\n".join(
        [
            vision_user_prompt(prompt, image_count),
            "Image analysis (description only):",
            numbered,
            "Rules: no suggestions, opinions, fixes or advice; report only the details you see.",
        ]
    )


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------

def select_system_prompt(
    provider: str,
    prompt: str,
    *,
    thinking_level: int = 0,
    image_count: int = 0,
) -> str:
    if thinking_level > 0:
        return deep_thinking_system_prompt(prompt)
    if image_count:
        return image_only_system_prompt(image_count)
    if mentions_video_analysis(prompt):
        return VIDEO_ANALYSIS_SYSTEM_PROMPT
    return system_prompt_for(provider)
