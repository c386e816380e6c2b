from __future__ import annotations

import itertools

import allure
import pytest

from turnkeeper.loop.task_ids import (
    InvalidTaskIdError,
    compare_task_ids,
    generate_after,
    generate_between,
    generate_next_available,
    is_valid_task_id,
    next_major_id,
    parse_task_id,
    sort_task_ids,
)

pytestmark = [
    allure.epic("Iteration Control"),
    allure.feature("Task Ids"),
]

_SAMPLE_IDS = [
    "T-001",
    "T-002",
    "T-002.1",
    "T-002.2",
    "T-002.9",
    "T-002.10",
    "T-002.25",
    "T-003",
    "T-2",
    "S-002",
    "STORY-10.5",
]


def test_parse_keeps_literal_digits() -> None:
    task_id = parse_task_id("TASK-002.10")

    assert task_id.prefix == "TASK"
    assert task_id.major == 2
    assert task_id.minor == 10
    assert str(task_id) == "TASK-002.10"


def test_parse_without_minor() -> None:
    task_id = parse_task_id("TASK-002")

    assert task_id.minor is None
    assert str(task_id) == "TASK-002"


@pytest.mark.parametrize("value", ["", "T-", "-001", "T-1.", "T-1.a", "T_1", "1-002", "T-1.2.3"])
def test_parse_rejects_malformed_ids(value: str) -> None:
    with pytest.raises(InvalidTaskIdError) as error:
        parse_task_id(value)

    assert error.value.value == value
    assert not is_valid_task_id(value)


def test_parse_rejects_non_string() -> None:
    with pytest.raises(InvalidTaskIdError, match="must be a string"):
        parse_task_id(12)  # type: ignore[arg-type]


def test_minor_compares_as_integer_not_decimal() -> None:
    assert compare_task_ids("T-002.9", "T-002.10") == -1
    assert compare_task_ids("T-002.5", "T-002.25") == -1
    assert compare_task_ids("T-002.25", "T-002.5") == 1


def test_absent_minor_sorts_before_any_minor() -> None:
    assert compare_task_ids("T-002", "T-002.0") == -1
    assert compare_task_ids("T-002", "T-002.1") == -1
    assert compare_task_ids("T-002.99", "T-003") == -1


def test_compare_is_reflexive() -> None:
    for value in _SAMPLE_IDS:
        assert compare_task_ids(value, value) == 0


def test_compare_is_antisymmetric_and_strict() -> None:
    for left, right in itertools.permutations(_SAMPLE_IDS, 2):
        forward = compare_task_ids(left, right)
        assert forward != 0
        assert compare_task_ids(right, left) == -forward


def test_compare_is_transitive() -> None:
    for a, b, c in itertools.permutations(_SAMPLE_IDS, 3):
        if compare_task_ids(a, b) < 0 and compare_task_ids(b, c) < 0:
            assert compare_task_ids(a, c) < 0


def test_sort_is_never_lexicographic() -> None:
    assert sort_task_ids(["T-002.10", "T-003", "T-002.9", "T-002", "T-001"]) == [
        "T-001",
        "T-002",
        "T-002.9",
        "T-002.10",
        "T-003",
    ]


def test_generate_after_starts_and_increments_counter() -> None:
    assert generate_after("T-002") == "T-002.1"
    assert generate_after("T-002.1") == "T-002.2"
    assert generate_after("T-002.9") == "T-002.10"


def test_generate_after_is_greater_than_input() -> None:
    for value in _SAMPLE_IDS:
        generated = generate_after(value)
        assert compare_task_ids(generated, value) == 1
        assert str(parse_task_id(generated)) == generated


def test_generate_next_available_never_fills_gaps() -> None:
    existing = ["T-001", "T-002", "T-002.1", "T-002.3", "T-003"]

    assert generate_next_available(existing, "T-002") == "T-002.4"


def test_generate_next_available_starts_at_one() -> None:
    assert generate_next_available(["T-001", "T-002"], "T-002") == "T-002.1"


def test_generate_next_available_ignores_other_prefixes() -> None:
    existing = ["T-002", "S-002.7"]

    assert generate_next_available(existing, "T-002") == "T-002.1"


def test_insert_after_existing_minor_preserves_order() -> None:
    existing = ["T-001", "T-002", "T-002.1", "T-003"]

    inserted = generate_next_available(existing, "T-002")

    assert inserted == "T-002.2"
    assert sort_task_ids([*existing, inserted]) == [
        "T-001",
        "T-002",
        "T-002.1",
        "T-002.2",
        "T-003",
    ]


def test_generate_between_uses_fractional_midpoint() -> None:
    assert generate_between("T-002.1", "T-002.11") == "T-002.105"
    assert generate_between("T-002.1", "T-002.2") == "T-002.15"
    assert generate_between("T-002", "T-002.1") == "T-002.05"


def test_generate_between_accepts_reversed_arguments() -> None:
    assert generate_between("T-002.2", "T-002.1") == "T-002.15"


def test_generate_between_requires_same_major() -> None:
    with pytest.raises(InvalidTaskIdError, match="share prefix and major"):
        generate_between("T-002.1", "T-003")


def test_generate_between_rejects_same_position() -> None:
    with pytest.raises(InvalidTaskIdError, match="same position"):
        generate_between("T-002.1", "T-002.10")


def test_generated_ids_round_trip() -> None:
    generated = [
        generate_after("T-002"),
        generate_next_available(["T-002", "T-002.4"], "T-002"),
        generate_between("T-002.1", "T-002.11"),
        next_major_id(["T-001", "T-009"], "T"),
    ]

    for value in generated:
        assert str(parse_task_id(value)) == value


def test_next_major_keeps_zero_padding() -> None:
    assert next_major_id(["STORY-001", "STORY-009"], "STORY") == "STORY-010"
    assert next_major_id(["STORY-1", "STORY-2"], "STORY") == "STORY-3"
    assert next_major_id([], "STORY") == "STORY-001"
