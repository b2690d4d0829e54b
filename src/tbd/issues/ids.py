"""Dual identifiers: internal ids, short codes and input resolution.

Every issue has two names:

* an **internal id** ``is-<ulid>``: 48-bit millisecond timestamp plus
  80 random bits, 26 lowercase characters, sortable by creation time and
  never reused;
* a **short code** such as ``a7k2``, displayed as ``tbd-a7k2``, mapped to
  exactly one internal id by the id mapping (see ``mapping.py``).

Internal ids come from an explicit ``InternalIdGenerator`` owned by the
caller, so monotonicity holds per generator without shared module state.
"""

from __future__ import annotations

import logging
import os
import random
import re
import secrets
import time
from collections.abc import Callable
from typing import Protocol

from ..errors import IntegrityError, NotFoundError, TbdError
from ..validators import validate_short_code
from .models import INTERNAL_ID_PREFIX, is_internal_id, ulid_part

logger = logging.getLogger(__name__)

# Crockford base32 (no i, l, o, u), lowercased
_ULID_ALPHABET = "0123456789abcdefghjkmnpqrstvwxyz"
_ULID_LEN = 26
_TIME_LEN = 10
_RANDOM_BITS = 80

SHORT_ID_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"

# (mapping size below which, short code length)
_LENGTH_THRESHOLDS = ((50_000, 4), (1_500_000, 5))
_MAX_LENGTH = 6
_ATTEMPTS_PER_LENGTH = 10

_PREFIX_RE = re.compile(r"^[a-z]+-")
_BARE_ULID_RE = re.compile(r"^[0-9a-z]{26}$")


class ShortIdLookup(Protocol):
    """The part of ``IdMapping`` the resolver needs."""

    def __len__(self) -> int: ...

    def __contains__(self, short: object) -> bool: ...

    def internal_for(self, short: str) -> str | None: ...

    def short_for(self, internal_id: str) -> str | None: ...


def _encode(value: int, length: int) -> str:
    chars = []
    for _ in range(length):
        value, rem = divmod(value, 32)
        chars.append(_ULID_ALPHABET[rem])
    return "".join(reversed(chars))


class InternalIdGenerator:
    """Monotonic ULID generator.

    Ids from one generator are strictly increasing, even for many calls
    within the same millisecond: the random part of the previous id is
    incremented instead of drawn fresh.  A clock that moves backwards is
    treated as the last seen millisecond.

    Args:
        clock: Returns the current time in milliseconds.
        random_bytes: Returns *n* random bytes.
    """

    def __init__(
        self,
        clock: Callable[[], int] | None = None,
        random_bytes: Callable[[int], bytes] | None = None,
    ) -> None:
        self._clock = clock or (lambda: time.time_ns() // 1_000_000)
        self._random_bytes = random_bytes or os.urandom
        self._last_ms = -1
        self._last_random = 0

    def _fresh_random(self) -> int:
        return int.from_bytes(self._random_bytes(_RANDOM_BITS // 8), "big")

    def ulid(self) -> str:
        """Return the next bare 26-character ULID."""
        ms = self._clock()
        if ms > self._last_ms:
            random_part = self._fresh_random()
        else:
            ms = self._last_ms
            random_part = self._last_random + 1
            if random_part >= 1 << _RANDOM_BITS:
                # random space exhausted for this tick: borrow the next ms
                ms += 1
                random_part = self._fresh_random()
        self._last_ms = ms
        self._last_random = random_part
        return _encode(ms, _TIME_LEN) + _encode(
            random_part, _ULID_LEN - _TIME_LEN
        )

    def __call__(self) -> str:
        """Return the next internal id (``is-<ulid>``)."""
        return INTERNAL_ID_PREFIX + self.ulid()


# ---------------------------------------------------------------------------
# Short codes
# ---------------------------------------------------------------------------


def optimal_short_id_length(count: int) -> int:
    """Short code length for a mapping that already holds *count* entries."""
    for limit, length in _LENGTH_THRESHOLDS:
        if count < limit:
            return length
    return _MAX_LENGTH


def generate_short_id(
    mapping: ShortIdLookup,
    rng: random.Random | None = None,
) -> str:
    """Return a short code not present in *mapping*.

    Tries ten random codes at the optimal length, then ten more one
    character longer.

    Raises:
        TbdError: If every attempt collided.
    """
    rng = rng or secrets.SystemRandom()
    base_length = optimal_short_id_length(len(mapping))

    for length in (base_length, base_length + 1):
        for _ in range(_ATTEMPTS_PER_LENGTH):
            code = "".join(
                rng.choice(SHORT_ID_ALPHABET) for _ in range(length)
            )
            if code not in mapping:
                return code
        logger.debug(
            "No free short code of length %d after %d attempts",
            length,
            _ATTEMPTS_PER_LENGTH,
        )

    raise TbdError(
        f"Could not generate a unique short id after "
        f"{2 * _ATTEMPTS_PER_LENGTH} attempts",
        "The id mapping is unusually dense; retry the command.",
    )


def foreign_short_code(foreign_id: str) -> str | None:
    """Extract a preservable short code from a foreign display id.

    ``"test-001"`` gives ``"001"``; ``"ABC-12"`` gives ``"12"``.  Returns
    ``None`` when the remainder is not a legal short code.
    """
    text = foreign_id.strip().lower()
    code = _PREFIX_RE.sub("", text, count=1)
    ok, _ = validate_short_code(code)
    return code if ok else None


# ---------------------------------------------------------------------------
# Resolution and display
# ---------------------------------------------------------------------------


def resolve_input(text: str, mapping: ShortIdLookup) -> str:
    """Resolve user input to an internal id.

    Accepts, case-insensitively:

    - an internal id: ``is-01hx5zzkbkactav9wevgemmvrz``
    - a bare ULID: ``01hx5zzkbkactav9wevgemmvrz``
    - a prefixed short code: ``tbd-a7k2`` (any letter prefix, which also
      covers the legacy ``bd-`` prefix)
    - a bare short code: ``a7k2``

    Raises:
        NotFoundError: If the input names no known issue.
    """
    value = text.strip().lower()
    if not value:
        raise NotFoundError("Empty issue id")

    if is_internal_id(value):
        return value

    remainder = _PREFIX_RE.sub("", value, count=1)
    if _BARE_ULID_RE.match(remainder):
        return INTERNAL_ID_PREFIX + remainder

    internal = mapping.internal_for(remainder)
    if internal is None:
        raise NotFoundError(f"Issue not found: {text.strip()}")
    return internal


def format_display(
    internal_id: str, mapping: ShortIdLookup, prefix: str
) -> str:
    """Return ``{prefix}-{short}`` for *internal_id*.

    Raises:
        IntegrityError: If the mapping has no entry for *internal_id*.
            A display id is never made up or truncated from the ULID.
    """
    short = mapping.short_for(internal_id)
    if short is None:
        raise IntegrityError(
            f"No short id mapped for {internal_id} "
            f"(ULID {ulid_part(internal_id)})",
            "Run the consistency check with fix enabled to restore the "
            "missing mapping entry.",
        )
    return f"{prefix}-{short}"
