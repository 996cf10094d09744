"""Acceptance-criteria checks applied to a step's output."""

from __future__ import annotations

import logging
import re
from typing import Any

from workforge.core.template import lookup, to_text
from workforge.errors import AcceptanceError

_log = logging.getLogger(__name__)

MAX_PATTERN_LENGTH = 500
_SAFE_FLAGS = re.compile(r"^[ims]*$")
_FLAG_MAP = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL}
_EQUALS = re.compile(r"^(.+?)\s*==\s*(.+)$")
_DURATION = re.compile(r"^duration\s*<\s*(\d+(?:\.\d+)?)$")


def check_criterion(
    criterion: str,
    raw_output: str,
    parsed_output: Any,
    duration: float | None = None,
) -> bool:
    """
    Evaluate one criterion.

    Supported forms:
        /pattern/flags   regex search over the raw output (flags: i, m, s)
        path == value    compared against ``{"output": parsed_output}``
        duration < N     dispatch duration in seconds
        anything else    substring of the raw output
    """
    if criterion.startswith("/"):
        last_slash = criterion.rfind("/")
        if last_slash > 0:
            pattern = criterion[1:last_slash]
            flags = criterion[last_slash + 1:]
            if len(pattern) > MAX_PATTERN_LENGTH:
                _log.warning("Regex criterion too long; matching literally")
                return criterion in raw_output
            if not _SAFE_FLAGS.match(flags):
                _log.warning("Unsupported regex flags '%s'; matching literally", flags)
                return criterion in raw_output
            re_flags = 0
            for flag in flags:
                re_flags |= _FLAG_MAP[flag]
            try:
                return re.search(pattern, raw_output, re_flags) is not None
            except re.error as e:
                _log.warning("Invalid regex criterion '%s': %s; matching literally", criterion, e)
                return pattern in raw_output

    duration_match = _DURATION.match(criterion.strip())
    if duration_match:
        if duration is None:
            return True
        return duration < float(duration_match.group(1))

    equals_match = _EQUALS.match(criterion)
    if equals_match:
        path, expected = equals_match.groups()
        actual = lookup({"output": parsed_output}, path.strip(), default=None)
        expected = expected.strip().strip("'\"")
        return to_text(actual) == expected

    return criterion in raw_output


def validate_acceptance(
    step_id: str,
    criteria: list[str],
    raw_output: str,
    parsed_output: Any,
    duration: float | None = None,
) -> None:
    """Raise ``AcceptanceError`` on the first unmet criterion."""
    for criterion in criteria:
        if not check_criterion(criterion, raw_output, parsed_output, duration):
            raise AcceptanceError(f"Acceptance criterion not met: \"{criterion}\"")
    if criteria:
        _log.info(
            "All %d acceptance criteria passed", len(criteria),
            extra={"step_id": step_id},
        )
