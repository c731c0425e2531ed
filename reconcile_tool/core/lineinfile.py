"""
Line-in-file editing shared by the probe layer and the reconciler.

A line selected by the match pattern is replaced in place (the last match
wins); when nothing matches the desired line is appended at end of file.
Rewritten content always ends with a newline so repeated runs produce the
same bytes.
"""

import re
from typing import List, Optional


def split_lines(content: str) -> List[str]:
    """Split on newlines only; form feeds and other separators stay inside a line."""
    if not content:
        return []
    lines = content.split("\n")
    if lines[-1] == "":
        lines.pop()
    return lines


def last_match(lines: List[str], pattern: str) -> Optional[int]:
    """Index of the last line matching pattern, or None."""
    regex = re.compile(pattern)
    found = None
    for index, line in enumerate(lines):
        if regex.search(line):
            found = index
    return found


def is_converged(content: str, pattern: str, line: Optional[str], present: bool) -> bool:
    lines = split_lines(content)
    index = last_match(lines, pattern)
    if not present:
        return index is None
    if index is not None:
        return lines[index] == line
    return line in lines


def apply_line(content: str, pattern: str, line: Optional[str], present: bool) -> str:
    """Return content with the line enforced (or removed when present is False)."""
    lines = split_lines(content)

    if not present:
        regex = re.compile(pattern)
        lines = [existing for existing in lines if not regex.search(existing)]
    else:
        index = last_match(lines, pattern)
        if index is not None:
            lines[index] = line
        elif line not in lines:
            lines.append(line)

    if not lines:
        return ""
    return "\n".join(lines) + "\n"
