"""Parsing of bisection tool output.

Kept free of any process handling so it can be exercised against captured
output strings.
"""

from typing import Optional


COMPLETION_TOKEN = "first bad commit"


def has_completion_token(text: str) -> bool:
    """Return True if the text reports a found culprit."""
    return COMPLETION_TOKEN in text


def find_completion_line(text: str) -> Optional[str]:
    """Find the first line carrying the completion marker.

    Args:
        text: Tool output or decision log

    Returns:
        The matching line, or None if the search is not finished
    """
    for line in text.splitlines():
        if has_completion_token(line):
            return line
    return None


def revision_from_line(line: str) -> str:
    """Extract the culprit revision from a completion line.

    Two shapes are understood::

        # first bad commit: [4f2a...] subject      (decision log)
        4f2a... is the first bad commit            (mark output)

    Args:
        line: Line returned by find_completion_line

    Returns:
        Revision identifier

    Raises:
        ValueError: If no revision can be found in the line
    """
    start = line.find("[")
    end = line.find("]", start + 1)
    if start != -1 and end != -1:
        revision = line[start + 1 : end].strip()
    else:
        tokens = line.split()
        revision = tokens[0] if tokens else ""

    if not revision or revision == "#":
        raise ValueError(f"No revision found in completion line: {line!r}")
    return revision
