"""Fenced code block extraction from agent output."""

from __future__ import annotations

import re

from duet.schemas import CodeBlock

# ```lang\n ... ```  — the language tag is optional, the body is matched lazily.
CODE_BLOCK_PATTERN = re.compile(r"```([\w+#.-]*)\r?\n(.*?)```", re.DOTALL)


def parse_code_blocks(text: str) -> list[CodeBlock]:
    """Return every fenced code block in ``text``, in document order.

    Trailing whitespace of each body is trimmed; leading whitespace is kept.
    Unterminated fences do not match.
    """
    return [
        CodeBlock(language=match.group(1), code=match.group(2).rstrip())
        for match in CODE_BLOCK_PATTERN.finditer(text)
    ]


def extract_first_block(text: str) -> CodeBlock | None:
    match = CODE_BLOCK_PATTERN.search(text)
    if match is None:
        return None
    return CodeBlock(language=match.group(1), code=match.group(2).rstrip())


def extract_first_code(text: str) -> str | None:
    """Body of the first fenced code block, or None if there is none."""
    block = extract_first_block(text)
    return block.code if block else None
