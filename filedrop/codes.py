import logging
import random
import re
import string
from typing import Any, Container, Optional

from .errors import CodeSpaceExhaustedError

logger = logging.getLogger("filedrop.codes")

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 6
DEFAULT_MAX_ATTEMPTS = 100

_system_random = random.SystemRandom()
_pattern_cache = {}


def _code_pattern(length: int) -> "re.Pattern[str]":
    pattern = _pattern_cache.get(length)
    if pattern is None:
        pattern = re.compile(rf"[A-Z0-9]{{{length}}}")
        _pattern_cache[length] = pattern
    return pattern


def generate_code(
    length: int = CODE_LENGTH,
    alphabet: str = CODE_ALPHABET,
    rng: Optional[Any] = None,
) -> str:
    """Draw *length* characters uniformly from *alphabet*."""

    source = rng or _system_random
    return "".join(source.choice(alphabet) for _ in range(length))


def generate_unique_code(
    existing: Container[str],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    *,
    length: int = CODE_LENGTH,
    alphabet: str = CODE_ALPHABET,
    rng: Optional[Any] = None,
) -> str:
    """Return a code not present in *existing*.

    *existing* is checked as given, so callers that need the result to stay
    unique must hold the index lock until the new record is committed.
    Raises :class:`CodeSpaceExhaustedError` after *max_attempts* collisions.
    """

    attempts = max(1, int(max_attempts))
    for attempt in range(attempts):
        code = generate_code(length, alphabet, rng)
        if code not in existing:
            logger.debug("code_generated attempts=%d", attempt + 1)
            return code

    logger.error("code_space_exhausted attempts=%d length=%d", attempts, length)
    raise CodeSpaceExhaustedError(attempts)


def normalize_code(value: Optional[str]) -> str:
    """Strip whitespace and upper-case user input."""

    if not isinstance(value, str):
        return ""
    return value.strip().upper()


def validate_code(code: Optional[str], length: int = CODE_LENGTH) -> bool:
    if not isinstance(code, str):
        return False
    return bool(_code_pattern(length).fullmatch(code))
