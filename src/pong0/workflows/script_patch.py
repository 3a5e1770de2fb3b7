"""Allow-listed rewrite pass that disarms the challenge script's side effects.

Each rule targets one known call shape. Navigation and window effects become
console logging; the vendor's automation check is forced down its "not a bot"
branch. Anything that still looks side-effecting after the pass is reported
as residual risk so vendor changes are visible.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

PATCH_SET_VERSION = "1"


@dataclass(frozen=True)
class PatchRule:
    name: str
    pattern: "re.Pattern[str]"
    replacement: str


PATCH_RULES: Tuple[PatchRule, ...] = (
    PatchRule(
        "reload",
        re.compile(r"window\.location\.reload\(\)"),
        "console.log('[sandbox] blocked reload')",
    ),
    PatchRule(
        "href_assign",
        re.compile(r"window\.location\.href\s*=\s*([^;]+)"),
        r"console.log('[sandbox] blocked redirect to', \1)",
    ),
    PatchRule(
        "location_replace",
        re.compile(r"window\.location\.replace\(([^)]+)\)"),
        r"console.log('[sandbox] blocked replace redirect to', \1)",
    ),
    PatchRule(
        "location_assign",
        re.compile(r"window\.location\.assign\(([^)]+)\)"),
        r"console.log('[sandbox] blocked assign redirect to', \1)",
    ),
    PatchRule(
        "window_open",
        re.compile(r"window\.open\(([^)]+)\)"),
        r"console.log('[sandbox] blocked window.open', \1)",
    ),
    PatchRule(
        "bot_detect",
        re.compile(
            r"b\.load\(\)\.then\(_0x2e2663 => _0x2e2663\.detect\(\)\)\.then\(_0x465ba0 => \{"
        ),
        "Promise.resolve({bot: false}).then(_0x465ba0 => {",
    ),
    PatchRule(
        "bot_branch",
        re.compile(r"if \(_0x465ba0\.bot === false\)"),
        "if (true)",
    ),
)

# Shapes that can still navigate or spawn windows after patching.
RESIDUAL_RISK_PATTERNS: Tuple[Tuple[str, "re.Pattern[str]"], ...] = (
    ("location_reload", re.compile(r"\blocation\s*\.\s*reload\s*\(")),
    ("location_href_assign", re.compile(r"\blocation\s*\.\s*href\s*=(?!=)")),
    ("location_assign", re.compile(r"\blocation\s*=(?!=)")),
    ("location_replace", re.compile(r"\blocation\s*\.\s*(?:replace|assign)\s*\(")),
    ("window_open", re.compile(r"\bwindow\s*\.\s*open\s*\(")),
    ("top_navigation", re.compile(r"\btop\s*\.\s*location\b")),
)


@dataclass
class PatchReport:
    text: str
    version: str = PATCH_SET_VERSION
    applied: Dict[str, int] = field(default_factory=dict)
    residual: List[str] = field(default_factory=list)

    @property
    def total_applied(self) -> int:
        return sum(self.applied.values())


def find_residual_risks(text: str) -> List[str]:
    hits: List[str] = []
    for name, pattern in RESIDUAL_RISK_PATTERNS:
        if pattern.search(text):
            hits.append(name)
    return hits


def patch_script(source: str, rules: Tuple[PatchRule, ...] = PATCH_RULES) -> PatchReport:
    """Apply ``rules`` in order and report substitutions plus residual risks."""

    text = source or ""
    applied: Dict[str, int] = {}
    for rule in rules:
        text, count = rule.pattern.subn(rule.replacement, text)
        applied[rule.name] = count
    return PatchReport(text=text, applied=applied, residual=find_residual_risks(text))


__all__ = [
    "PATCH_SET_VERSION",
    "PATCH_RULES",
    "PatchRule",
    "PatchReport",
    "find_residual_risks",
    "patch_script",
]
