"""
Complexity classifier: sizes a generation request from the prompt text.

Pure Python, no AI. Signal groups are checked in priority order and the first
group that matches decides the tier:

  FULLSTACK > LARGE > SPA > API_BACKED > MULTI_SECTION > STATIC
"""

from enum import Enum


# Hard ceiling of the generation service
MAX_TOKENS = 8192


class ComplexityTier(Enum):
    # (token ceiling, request timeout in seconds)
    STATIC = (1500, 75.0)
    MULTI_SECTION = (2500, 75.0)
    API_BACKED = (4000, 75.0)
    SPA = (5000, 75.0)
    LARGE = (7000, 120.0)
    FULLSTACK = (8192, 120.0)

    @property
    def max_tokens(self) -> int:
        return min(self.value[0], MAX_TOKENS)

    @property
    def timeout(self) -> float:
        return self.value[1]


# Technology pairs that only make sense together in a fullstack project
_FULLSTACK_PAIRS = [
    ("node", "react"),
    ("express", "mongodb"),
    ("django", "frontend"),
    ("flask", "frontend"),
]

_FULLSTACK_WORDS = ["fullstack", "full stack", "backend and frontend", "server and client"]
_LARGE_WORDS = ["documentation", "large project"]
_SPA_WORDS = ["react", "vue", "angular", "spa", "single page application"]
_API_WORDS = ["api", "fetch", "database", "backend", "auth"]
_MULTI_SECTION_WORDS = ["responsive", "sections", "multi-page"]

_LONG_REACT_PROMPT = 1000
_LONG_PROMPT = 300

# Phrases users type when they explicitly want the biggest budget
_HIGH_TOKEN_MARKERS = ["9000", "9k", "8k"]


def _mentions(text: str, words: list[str]) -> bool:
    return any(w in text for w in words)


def classify(prompt: str) -> ComplexityTier:
    """Map prompt text to a tier. Always returns one; empty prompts are STATIC."""
    text = (prompt or "").lower()

    if _mentions(text, _FULLSTACK_WORDS) or any(a in text and b in text for a, b in _FULLSTACK_PAIRS):
        return ComplexityTier.FULLSTACK

    if _mentions(text, _LARGE_WORDS) or ("react" in text and len(text) > _LONG_REACT_PROMPT):
        return ComplexityTier.LARGE

    if _mentions(text, _SPA_WORDS):
        return ComplexityTier.SPA

    if _mentions(text, _API_WORDS):
        return ComplexityTier.API_BACKED

    if _mentions(text, _MULTI_SECTION_WORDS) or len(text) > _LONG_PROMPT:
        return ComplexityTier.MULTI_SECTION

    return ComplexityTier.STATIC


def token_limit_for(prompt: str, tier: ComplexityTier | None = None) -> int:
    """
    Token ceiling for a prompt. An explicit "8k"/"9k"/"9000" request gets the
    service maximum; otherwise the tier decides. Never exceeds MAX_TOKENS.
    """
    tier = tier or classify(prompt)
    text = (prompt or "").lower()
    if _mentions(text, _HIGH_TOKEN_MARKERS):
        return MAX_TOKENS
    return tier.max_tokens


def timeout_for(max_tokens: int) -> float:
    """Longer ceilings get longer request timeouts."""
    return 120.0 if max_tokens > 5000 else 75.0
