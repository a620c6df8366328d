"""Prompt files for the voice agent."""

from functools import lru_cache
from pathlib import Path

PROMPTS_DIR = Path(__file__).parent


@lru_cache(maxsize=8)
def load_prompt(relative_path: str) -> str:
    """Load a markdown prompt from this directory.

    Raises:
        FileNotFoundError: If the prompt file doesn't exist
    """
    file_path = PROMPTS_DIR / relative_path
    if not file_path.exists():
        raise FileNotFoundError(f"Prompt file not found: {file_path}")
    return file_path.read_text(encoding="utf-8").strip()


def voice_agent_instructions(additional: str | None = None) -> str:
    base = load_prompt("voice_agent.md")
    if additional and additional.strip():
        return f"{base}\n\nSession context:\n{additional}"
    return base
