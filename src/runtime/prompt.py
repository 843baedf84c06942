from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence


logger = logging.getLogger(__name__)

MEMORY_HINT = 'If anything should be saved to memory, emit <memory-update target="work|life|global">...</memory-update>.'
CONTEXT_SEPARATOR = "\n\n---\n\n"


@dataclass(frozen=True)
class PromptParts:
    """Inputs that make up the prompt sent to an executor."""

    query: str
    system_context: str = ""
    context_files: Sequence[str] = field(default_factory=tuple)
    attachments: Sequence[str] = field(default_factory=tuple)
    include_memory_hint: bool = False


def attachments_manifest(paths: Sequence[str]) -> str:
    if not paths:
        return ""
    return "Attached files (local paths):\n- " + "\n- ".join(paths)


def load_context_files(paths: Sequence[str], *, base_dir: str | None = None) -> str:
    """Concatenate readable context files under a `# Context from <file>` header.

    Unreadable files are logged and skipped; they never fail the run.
    """
    sections: list[str] = []
    for raw in paths:
        p = Path(raw).expanduser()
        if not p.is_absolute() and base_dir:
            p = Path(base_dir).expanduser() / p
        try:
            content = p.read_text(encoding="utf-8").strip()
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("context file unreadable: %s (%s)", p, e)
            continue
        if content:
            sections.append(f"# Context from {raw}\n\n{content}")
    return CONTEXT_SEPARATOR.join(sections)


def build_prompt(parts: PromptParts, *, context_text: str = "") -> str:
    """Assemble the prompt in a fixed order.

    system context, context files, memory hint, attachment manifest, query;
    empty sections are dropped and the rest joined by a blank line. The same
    inputs always produce the same string.
    """
    sections = [
        parts.system_context.strip(),
        context_text.strip(),
        MEMORY_HINT if parts.include_memory_hint else "",
        attachments_manifest(list(parts.attachments)),
        parts.query.strip(),
    ]
    return "\n\n".join(s for s in sections if s)
