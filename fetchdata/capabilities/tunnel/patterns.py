"""Tunnel URL extraction from unstructured client output.

cloudflared changes its banner text between releases, so detection is an
ordered list of rules instead of a single expression. Rules are tried in
order and the first one that matches wins, regardless of where in the chunk
a later rule would have matched.
"""
from __future__ import annotations

import re
from typing import Iterable, Pattern

_TRYCLOUDFLARE = r"https://[a-z0-9-]+\.trycloudflare\.com"

DEFAULT_PATTERNS: tuple[str, ...] = (
    rf"Your quick Tunnel: ({_TRYCLOUDFLARE})",
    rf"Visit ({_TRYCLOUDFLARE})",
    rf"({_TRYCLOUDFLARE})",
)


class PatternMatcher:
    """Ordered set of URL extraction rules."""

    def __init__(self, rules: Iterable[Pattern[str]]) -> None:
        self._rules: tuple[Pattern[str], ...] = tuple(rules)
        if not self._rules:
            raise ValueError("PatternMatcher needs at least one rule")

    @classmethod
    def from_patterns(
        cls, patterns: Iterable[str], flags: int = re.IGNORECASE,
    ) -> PatternMatcher:
        return cls(re.compile(p, flags) for p in patterns)

    @property
    def rules(self) -> tuple[Pattern[str], ...]:
        return self._rules

    def extract(self, chunk: str) -> str | None:
        """Return the URL found by the first matching rule, or None."""
        if not chunk:
            return None
        for rule in self._rules:
            match = rule.search(chunk)
            if not match:
                continue
            url = match.group(1) if rule.groups else match.group(0)
            if url:
                return url
        return None


DEFAULT_MATCHER = PatternMatcher.from_patterns(DEFAULT_PATTERNS)
