"""Tests for issues/ids.py: internal ids, short codes and resolution."""

from __future__ import annotations

import random

import pytest

from tbd.errors import IntegrityError, NotFoundError, TbdError
from tbd.issues.ids import (
    SHORT_ID_ALPHABET,
    InternalIdGenerator,
    foreign_short_code,
    format_display,
    generate_short_id,
    optimal_short_id_length,
    resolve_input,
)
from tbd.issues.mapping import IdMapping
from tbd.issues.models import is_internal_id

ULID = "01hx5zzkbkactav9wevgemmvrz"
INTERNAL = f"is-{ULID}"


@pytest.fixture
def mapping():
    m = IdMapping()
    m.add("a7k2", INTERNAL)
    return m


# ---------------------------------------------------------------------------
# InternalIdGenerator
# ---------------------------------------------------------------------------


class TestInternalIdGenerator:
    """Tests for InternalIdGenerator."""

    def test_format(self):
        """Ids are is- plus 26 lowercase characters."""
        internal_id = InternalIdGenerator()()

        assert is_internal_id(internal_id)
        assert internal_id == internal_id.lower()

    def test_monotonic_within_same_millisecond(self):
        """Ids from one generator strictly increase on a frozen clock."""
        gen = InternalIdGenerator(
            clock=lambda: 1_700_000_000_000,
            random_bytes=lambda n: b"\x00" * n,
        )

        ids = [gen() for _ in range(100)]

        assert ids == sorted(ids)
        assert len(set(ids)) == 100

    def test_clock_going_backwards_stays_monotonic(self):
        """A clock step backwards still yields a larger id."""
        ticks = iter([2_000, 1_000])
        gen = InternalIdGenerator(
            clock=lambda: next(ticks), random_bytes=lambda n: b"\x05" * n
        )

        first = gen()
        second = gen()

        assert second > first

    def test_time_prefix_sorts_by_creation(self):
        """Later milliseconds produce larger ids even with bigger randoms."""
        ticks = iter([1_000, 1_001])
        randoms = iter([b"\xff" * 10, b"\x00" * 10])
        gen = InternalIdGenerator(
            clock=lambda: next(ticks), random_bytes=lambda n: next(randoms)
        )

        assert gen() < gen()


# ---------------------------------------------------------------------------
# Short codes
# ---------------------------------------------------------------------------


class TestOptimalLength:
    """Tests for optimal_short_id_length()."""

    @pytest.mark.parametrize(
        "count, expected",
        [(0, 4), (49_999, 4), (50_000, 5), (1_499_999, 5), (1_500_000, 6)],
    )
    def test_thresholds(self, count, expected):
        assert optimal_short_id_length(count) == expected


class TestGenerateShortId:
    """Tests for generate_short_id()."""

    def test_length_and_alphabet(self):
        """A small mapping gets four base-36 characters."""
        code = generate_short_id(IdMapping(), rng=random.Random(1))

        assert len(code) == 4
        assert set(code) <= set(SHORT_ID_ALPHABET)

    def test_never_returns_existing_code(self, mapping):
        """Generated codes avoid the ones already mapped."""
        rng = random.Random(7)
        for _ in range(50):
            assert generate_short_id(mapping, rng=rng) != "a7k2"

    def test_falls_back_to_longer_code(self):
        """After ten collisions at the optimal length, length + 1 is used."""

        class Crowded:
            def __len__(self):
                return 0

            def __contains__(self, short):
                return len(short) == 4

            def internal_for(self, short):
                return None

            def short_for(self, internal_id):
                return None

        code = generate_short_id(Crowded(), rng=random.Random(3))

        assert len(code) == 5

    def test_exhausted_attempts_raise(self):
        """Twenty collisions in a row give up with a TbdError."""

        class Full:
            def __len__(self):
                return 0

            def __contains__(self, short):
                return True

            def internal_for(self, short):
                return None

            def short_for(self, internal_id):
                return None

        with pytest.raises(TbdError, match="unique short id"):
            generate_short_id(Full(), rng=random.Random(3))


class TestForeignShortCode:
    """Tests for foreign_short_code()."""

    def test_prefix_stripped(self):
        """test-001 keeps its leading zeros."""
        assert foreign_short_code("test-001") == "001"

    def test_case_folded(self):
        assert foreign_short_code("ABC-12") == "12"

    def test_invalid_remainder(self):
        """A remainder with illegal characters gives None."""
        assert foreign_short_code("proj-a_b") is None


# ---------------------------------------------------------------------------
# Resolution and display
# ---------------------------------------------------------------------------


class TestResolveInput:
    """Tests for resolve_input()."""

    def test_internal_id(self, mapping):
        assert resolve_input(INTERNAL, mapping) == INTERNAL

    def test_bare_ulid(self, mapping):
        """A bare 26-character ULID becomes an internal id."""
        assert resolve_input(ULID, mapping) == INTERNAL

    def test_prefixed_short_code(self, mapping):
        assert resolve_input("tbd-a7k2", mapping) == INTERNAL

    def test_legacy_prefix(self, mapping):
        """Any letter prefix is accepted, including bd-."""
        assert resolve_input("bd-a7k2", mapping) == INTERNAL

    def test_bare_short_code_case_insensitive(self, mapping):
        assert resolve_input("  A7K2 ", mapping) == INTERNAL

    def test_unknown_short_code(self, mapping):
        with pytest.raises(NotFoundError, match="zzzz"):
            resolve_input("tbd-zzzz", mapping)

    def test_empty_input(self, mapping):
        with pytest.raises(NotFoundError):
            resolve_input("   ", mapping)


class TestFormatDisplay:
    """Tests for format_display()."""

    def test_prefixed_short_code(self, mapping):
        assert format_display(INTERNAL, mapping, "tbd") == "tbd-a7k2"

    def test_missing_mapping_raises(self):
        """A display id is never invented from the ULID."""
        with pytest.raises(IntegrityError, match=ULID):
            format_display(INTERNAL, IdMapping(), "tbd")
