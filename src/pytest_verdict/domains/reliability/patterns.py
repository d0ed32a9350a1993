"""Validation of skip rule glob patterns."""

import re
from typing import Optional

from pytest_verdict.errors import InvalidPatternError

MAX_PATTERN_LENGTH = 255
VALID_PATTERN_CHARS = re.compile(r"^[\w\-*?/.\[\]{}@]+$")


def validate_glob_pattern(pattern: Optional[str]) -> Optional[str]:
    """
    Validates a branch or environment glob pattern.

    Empty patterns are valid and mean "any". Returns the trimmed pattern,
    or None for an empty one.

    Raises:
        InvalidPatternError: If the pattern is too long, contains characters
            outside the allowed set, or has an unterminated character class.
    """
    if not pattern:
        return None

    trimmed = pattern.strip()
    if not trimmed:
        return None

    if len(trimmed) > MAX_PATTERN_LENGTH:
        raise InvalidPatternError(f"Pattern too long (max {MAX_PATTERN_LENGTH} characters)")

    if not VALID_PATTERN_CHARS.match(trimmed):
        raise InvalidPatternError("Pattern contains invalid characters")

    if trimmed.count("[") != trimmed.count("]"):
        raise InvalidPatternError("Invalid glob pattern syntax")

    return trimmed


def validate_patterns(branch_pattern: Optional[str], env_pattern: Optional[str]) -> None:
    """Validates both patterns of a rule, prefixing the error with the offending field."""
    try:
        validate_glob_pattern(branch_pattern)
    except InvalidPatternError as e:
        raise InvalidPatternError(f"Branch pattern: {e}") from e

    try:
        validate_glob_pattern(env_pattern)
    except InvalidPatternError as e:
        raise InvalidPatternError(f"Environment pattern: {e}") from e
