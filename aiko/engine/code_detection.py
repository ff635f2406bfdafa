"""
aiko.engine.code_detection - Heuristic language detection for chat text.

Used by the history optimizer: a message that carries code gets a larger
truncation budget than prose.
"""

from __future__ import annotations

import re

# Checked in insertion order; the first language with a matching pattern wins.
CODE_PATTERNS: dict[str, tuple[re.Pattern[str], ...]] = {
    "kotlin": (
        re.compile(r"\bfun\s+\w+\s*\([^)]*\)\s*(:\s*\w+)?\s*\{"),
        re.compile(r"\bval\s+\w+\s*:\s*\w+"),
        re.compile(r"\bprintln\s*\([^)]*\)"),
    ),
    "java": (
        re.compile(r"\bpublic\s+class\s+\w+"),
        re.compile(r"System\.out\.println\s*\([^)]*\)"),
        re.compile(r"\bpublic\s+static\s+void\s+main\s*\([^)]*\)"),
        re.compile(r"\bimport\s+java\.\w+"),
    ),
    "python": (
        re.compile(r"\bdef\s+\w+\s*\([^)]*\):"),
        re.compile(r"\bprint\s*\([^)]*\)"),
        re.compile(r"^\s*(from\s+[\w.]+\s+)?import\s+\w+", re.MULTILINE),
        re.compile(r"\bclass\s+\w+(\([^)]*\))?:"),
    ),
    "javascript": (
        re.compile(r"\bfunction\s+\w+\s*\([^)]*\)\s*\{"),
        re.compile(r"console\.log\s*\([^)]*\)"),
        re.compile(r"\bconst\s+\w+\s*=\s*[^;]+;"),
        re.compile(r"document\.getElementById"),
    ),
    "html": (
        re.compile(r"<!DOCTYPE\s+html>", re.IGNORECASE),
        re.compile(r"<html[^>]*>"),
        re.compile(r"<head>"),
        re.compile(r"<body>"),
        re.compile(r"<div[^>]*>"),
    ),
    "css": (
        re.compile(r"\.\w+\s*\{[^}]*\}"),
        re.compile(r"#\w+\s*\{[^}]*\}"),
        re.compile(r"@media[^{]*\{"),
    ),
    "json": (
        re.compile(r"\{\s*\"[^\"]*\"\s*:\s*[^}]+\}"),
        re.compile(r"\[\s*\{[^}]+\}\s*\]"),
    ),
    "xml": (
        re.compile(r"<\?xml[^?>]*\?>"),
        re.compile(r"<([A-Za-z][\w-]*)[^>]*>[^<]*</\1>"),
    ),
}

_FENCED_BLOCK = re.compile(r"```(\w+)?\s*([\s\S]*?)```")


def detect_language(code: str) -> str | None:
    for language, patterns in CODE_PATTERNS.items():
        if any(p.search(code) for p in patterns):
            return language
    return None


def detect_language_and_code(content: str) -> tuple[str | None, str | None]:
    """
    Return ``(language, code)`` found in *content*, or ``(None, None)``.

    A fenced block wins; its language hint is used when present, otherwise
    the block body is classified and falls back to ``"text"``.
    """
    match = _FENCED_BLOCK.search(content)
    if match:
        hint = match.group(1)
        body = match.group(2).strip()
        if hint:
            return hint, body
        language = detect_language(body)
        if language:
            return language, body
        if body:
            return "text", body

    language = detect_language(content)
    if language:
        return language, content
    return None, None


def contains_code(text: str) -> bool:
    if "```" in text:
        return True
    language, _ = detect_language_and_code(text)
    return language is not None
