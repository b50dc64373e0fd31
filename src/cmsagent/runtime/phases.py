"""Best-effort phase tagging of assistant text.

Model prose is an unreliable signal: these markers can fire on unrelated
text that happens to use the same words. Callers treat the label as a hint
(it only drives checkpoint cadence) and anything unmatched is "unknown".
"""

from __future__ import annotations

import re

PHASES = ("planning", "executing", "verifying", "reflecting", "unknown")

_MARKERS: tuple[tuple[str, re.Pattern[str]], ...] = (
    (
        "reflecting",
        re.compile(r"\b(?:in summary|to summarize|looking back|lesson|reflect)", re.I),
    ),
    (
        "verifying",
        re.compile(r"\b(?:verif|confirm|double-check|check(?:ing)? that|read back)", re.I),
    ),
    (
        "planning",
        re.compile(r"\b(?:plan|first,? i will|i will start|step \d+:|let me think)", re.I),
    ),
    ("executing", re.compile(r"\b(?:creat|updat|delet|add(?:ing)?|now i)", re.I)),
)


def detect_phase(text: str, had_tool_calls: bool = False) -> str:
    """Label one step; falls back to executing when tools ran, else unknown."""
    for phase, pattern in _MARKERS:
        if pattern.search(text or ""):
            return phase
    return "executing" if had_tool_calls else "unknown"
