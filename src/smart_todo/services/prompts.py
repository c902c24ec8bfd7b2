from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

import yaml


PROMPTS_DIR = Path(__file__).resolve().parents[3] / "prompts"


@dataclass(frozen=True)
class PromptPair:
    system: str
    user: str


@lru_cache
def load_prompt(name: str) -> PromptPair:
    """Load ``prompts/<name>.yaml``: a list of ``{role, content}`` messages."""
    path = PROMPTS_DIR / f"{name}.yaml"
    with path.open(encoding="utf-8") as f:
        messages: list[dict[str, str]] = yaml.safe_load(f)

    system = ""
    user = ""
    for msg in messages:
        text = msg["content"].strip()
        if msg["role"] == "system":
            system = text
        elif msg["role"] == "user":
            user = text

    if not system:
        raise ValueError(f"Prompt {name!r} has no system message")
    if not user:
        raise ValueError(f"Prompt {name!r} has no user message")
    return PromptPair(system=system, user=user)
