"""
snippets.py — cosmetic one-liners attached to a check-in.

Picked at random from a JSON list on disk. They are flavour text only and are
never built from the user's code or message.
"""

import json
import logging
import random
from pathlib import Path
from typing import List, Optional, Sequence

logger = logging.getLogger(__name__)

PLACEHOLDER = "🔍 is working on something mysterious"

DEFAULT_SNIPPETS = (
    "🚀 is coding with enthusiasm",
    "💻 is deep in thought",
    "🔥 is on fire",
    "🎯 is focused on building",
    "⚡ is supercharging their workflow",
)


def load_snippets(path: Path) -> List[str]:
    """Read a JSON array of strings. Raises OSError/ValueError on a bad file."""
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, list):
        raise ValueError(f"{path} must contain a JSON array")
    return [s for s in data if isinstance(s, str) and s.strip()]


class SnippetPicker:
    def __init__(
        self,
        path: Optional[Path] = None,
        fallback: Sequence[str] = DEFAULT_SNIPPETS,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.rng = rng or random.Random()
        self.snippets: List[str] = list(fallback)
        if path is not None:
            try:
                self.snippets = load_snippets(path)
            except (OSError, ValueError) as exc:
                logger.warning("Could not load snippets from %s (%s); using defaults", path, exc)

    def pick(self) -> str:
        if not self.snippets:
            return PLACEHOLDER
        return self.rng.choice(self.snippets)
