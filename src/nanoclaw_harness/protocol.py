"""Entrypoint wire codec for nanoclaw agent containers.

Requests go to the container as a single JSON document on stdin. Responses
come back on stdout between OUTPUT_START/END sentinel lines, surrounded by
whatever diagnostic text the entrypoint prints.
"""

from __future__ import annotations

import logging

from pydantic import ValidationError

from nanoclaw_harness.errors import MalformedOutput
from nanoclaw_harness.types import InvocationRequest, InvocationResult

logger = logging.getLogger(__name__)

OUTPUT_START_MARKER = "---NANOCLAW_OUTPUT_START---"
OUTPUT_END_MARKER = "---NANOCLAW_OUTPUT_END---"

# How much of the captured output to keep in a MalformedOutput when the
# markers are missing entirely.
_DIAGNOSTIC_TAIL_CHARS = 2000


def encode_request(request: InvocationRequest) -> bytes:
    """Serialize a request to the bytes written on the container's stdin.

    ``sessionId`` is left out when there is no session; the entrypoint
    reads its absence as "start a new session". ``secrets`` is always sent.

    Args:
        request: The request to encode.

    Returns:
        UTF-8 encoded JSON document followed by a newline.
    """
    body = request.model_dump_json(by_alias=True, exclude_none=True)
    return (body + "\n").encode()


def is_marker_line(line: str, marker: str) -> bool:
    """Return True if *line* consists of exactly *marker*.

    Surrounding whitespace (including a stray ``\\r``) is ignored; anything
    else on the line means it is not a marker.
    """
    return line.strip() == marker


def contains_end_marker(text: str) -> bool:
    """Return True if any whole line of *text* is the end sentinel."""
    return any(is_marker_line(line, OUTPUT_END_MARKER) for line in text.splitlines())


def extract_payload(stdout: str) -> str:
    """Return the text strictly between the first start/end sentinel pair.

    Only whole-line markers count, so marker text embedded inside a JSON
    string value is never mistaken for a delimiter. Anything after the
    first end marker is ignored.

    Args:
        stdout: Full captured stdout.

    Returns:
        The enclosed text, without the marker lines.

    Raises:
        MalformedOutput: If either marker line is missing.
    """
    lines = stdout.splitlines()
    start = next(
        (i for i, line in enumerate(lines) if is_marker_line(line, OUTPUT_START_MARKER)),
        None,
    )
    if start is None:
        raise MalformedOutput("No output start marker found", raw=stdout[-_DIAGNOSTIC_TAIL_CHARS:])
    end = next(
        (
            i
            for i in range(start + 1, len(lines))
            if is_marker_line(lines[i], OUTPUT_END_MARKER)
        ),
        None,
    )
    if end is None:
        raise MalformedOutput("No output end marker found", raw=stdout[-_DIAGNOSTIC_TAIL_CHARS:])
    return "\n".join(lines[start + 1 : end])


def decode_output(stdout: str) -> InvocationResult:
    """Parse the structured result out of captured stdout.

    Args:
        stdout: Full captured stdout.

    Returns:
        The decoded InvocationResult.

    Raises:
        MalformedOutput: If the markers are missing, the enclosed text is not
            valid JSON, ``status`` is absent, or ``status`` is not one of
            'success' / 'error'.
    """
    payload = extract_payload(stdout)
    try:
        return InvocationResult.model_validate_json(payload.strip())
    except ValidationError as exc:
        logger.debug("Rejected output payload: %s", exc)
        first = exc.errors()[0] if exc.errors() else {}
        where = ".".join(str(p) for p in first.get("loc", ()))
        reason = first.get("msg", str(exc))
        detail = f"{where}: {reason}" if where else reason
        raise MalformedOutput(f"Failed to parse container output: {detail}", raw=payload) from exc
