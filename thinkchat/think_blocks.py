"""
Reasoning block formatting.

Rewrites the growing model output so that text between a reasoning open
marker and its close marker is shown as a Markdown block quote. Meant to be
called on every partial update of the same buffer, so an open marker with
no close marker yet is quoted up to the end of the text.
"""

import re
from typing import List, Optional, Tuple

from .config import config

_NEWLINE = re.compile(r"\r\n|\r|\n")


def quote_lines(content: str) -> str:
    """
    Turn every line of content into a block quote line.

    Blank lines (after trimming) become a bare ">" so the quote is not
    broken into separate paragraphs.
    """
    lines = _NEWLINE.split(content)
    return "\n".join(">" if not line.strip() else "> " + line for line in lines)


def find_closed_blocks(text: str, open_marker: str, close_marker: str) -> List[Tuple[int, int, str]]:
    """
    Find every complete marker pair in text.

    Returns:
        List of (start, end, interior) spans in discovery order
    """
    pattern = re.compile(re.escape(open_marker) + r"(.*?)" + re.escape(close_marker), re.DOTALL)
    return [(m.start(), m.end(), m.group(1)) for m in pattern.finditer(text)]


def transform(
    text: str, open_marker: Optional[str] = None, close_marker: Optional[str] = None
) -> str:
    """
    Quote reasoning blocks in a model output buffer.

    Args:
        text: The accumulated model output
        open_marker: Start of a reasoning block (default: config.THINK_OPEN)
        close_marker: End of a reasoning block (default: config.THINK_CLOSE)

    Returns:
        Text with closed blocks replaced by quoted lines (markers removed) and
        a trailing unterminated block quoted up to the end of the text
    """
    open_marker = open_marker or config.THINK_OPEN
    close_marker = close_marker or config.THINK_CLOSE

    # Spans are collected first and rewritten last-to-first so the earlier
    # offsets stay valid.
    spans = find_closed_blocks(text, open_marker, close_marker)
    result = text
    for start, end, interior in reversed(spans):
        result = result[:start] + quote_lines(interior) + result[end:]

    # An unterminated block can only open after the last closed one, and the
    # text past that point is untouched by the rewrite above.
    tail_start = len(result) - (len(text) - spans[-1][1]) if spans else 0
    open_at = result.find(open_marker, tail_start)
    if open_at != -1:
        result = result[:open_at] + quote_lines(result[open_at + len(open_marker):])

    return result
