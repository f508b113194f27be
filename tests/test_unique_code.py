from __future__ import annotations

import random

import pytest

from paydesk.errors import ValidationError
from paydesk.unique_code import UniqueCodeAllocator, compose_amount, parse_unique_code, validate_unique_code


class SequenceRandom:
    def __init__(self, values: list[int]):
        self._values = list(values)
        self.calls = 0

    def randint(self, low: int, high: int) -> int:
        self.calls += 1
        return self._values.pop(0)


def test_allocate_stays_in_three_digit_range():
    allocator = UniqueCodeAllocator(rng=random.Random(7))
    codes = {allocator.allocate() for _ in range(500)}
    assert min(codes) >= 100
    assert max(codes) <= 999


def test_allocate_skips_codes_already_pending():
    rng = SequenceRandom([187, 187, 203])
    allocator = UniqueCodeAllocator(rng=rng)
    assert allocator.allocate(avoid={187}) == 203
    assert rng.calls == 3


def test_allocate_gives_up_after_max_attempts():
    rng = SequenceRandom([187, 187, 187])
    allocator = UniqueCodeAllocator(rng=rng, max_attempts=3)
    assert allocator.allocate(avoid={187}) == 187


def test_compose_amount_adds_code_to_base():
    assert compose_amount(50000, 187) == 50187


@pytest.mark.parametrize("code", [99, 1000, -5])
def test_validate_unique_code_rejects_out_of_range(code):
    with pytest.raises(ValidationError) as exc_info:
        validate_unique_code(code)
    assert exc_info.value.code == "INVALID_UNIQUE_CODE"


def test_parse_unique_code_accepts_numeric_strings():
    assert parse_unique_code(" 187 ") == 187
    assert parse_unique_code(999) == 999
    with pytest.raises(ValidationError):
        parse_unique_code("18a")
    with pytest.raises(ValidationError):
        parse_unique_code(True)


def test_compose_amount_rejects_negative_base():
    with pytest.raises(ValidationError) as exc_info:
        compose_amount(-1, 187)
    assert exc_info.value.code == "INVALID_AMOUNT"
