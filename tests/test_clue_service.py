"""
Tests for clue allocation and address parsing
"""

import pytest

from dinner.core.enums import Course
from dinner.services.clue_service import (
    FallbackClueContext,
    allocate_clue_indices,
    clues_for_course,
    combine_fun_facts,
    generate_fallback_clues,
    parse_address,
    validate_fun_facts,
)

def test_six_facts_give_unique_clues_per_course():
    allocation = allocate_clue_indices(6)

    assert allocation == {Course.STARTER: [0, 1], Course.MAIN: [2, 3], Course.DESSERT: [4, 5]}
    used = [i for indices in allocation.values() for i in indices]
    assert len(used) == len(set(used))

@pytest.mark.parametrize("total, expected", [
    (5, [[0, 1], [2, 3], [3, 4]]),
    (4, [[0, 1], [2, 0], [2, 3]]),
    (3, [[0], [1], [2]]),
    (2, [[0], [0], [1]]),
    (1, [[0], [0], [0]]),
    (0, [[], [], []]),
])
def test_allocation_degrades_with_fewer_facts(total, expected):
    allocation = allocate_clue_indices(total)

    assert [allocation[c] for c in (Course.STARTER, Course.MAIN, Course.DESSERT)] == expected
    assert all(0 <= i < total for indices in allocation.values() for i in indices)

def test_negative_fact_count_rejected():
    with pytest.raises(ValueError):
        allocate_clue_indices(-1)

def test_combine_fun_facts_skips_empty_values():
    assert combine_fun_facts(["a", "", None], ["b"]) == ["a", "b"]
    assert combine_fun_facts(None, "not a list") == []

def test_fallback_fills_missing_clues():
    facts = ["Plays the cello"]
    context = FallbackClueContext(host_names=["anna", "Bo"], travel_minutes=7, birth_years=[1985, 1987])

    clues = clues_for_course(facts, allocate_clue_indices(1), Course.MAIN, context)

    assert clues == ["Plays the cello", "Your hosts were born in the 1980s"]

def test_without_fallback_clues_can_be_short():
    assert clues_for_course([], allocate_clue_indices(0), Course.STARTER) == []

def test_generate_fallback_clues():
    clues = generate_fallback_clues(FallbackClueContext(host_names=["anna", "Bo"], travel_minutes=12))

    assert clues[0] == "About 12 minutes away"
    assert "Your hosts have the initials A & B" in clues
    assert clues[-1] == "You are going to have a great time there"

def test_validate_fun_facts():
    ok = validate_fun_facts(["a", "b", "c"], ["d", "e", "f"])
    short = validate_fun_facts(["a"], [])

    assert ok.is_valid and ok.missing_count == 0
    assert not short.is_valid
    assert short.missing_count == 5

def test_parse_full_address():
    info = parse_address("Storgatan 14B lgh 1102, 941 33 Pitea")

    assert info.street_name == "Storgatan"
    assert info.street_number == 14
    assert info.apartment == "lgh 1102"
    assert (info.range_low, info.range_high) == (10, 20)
    assert info.postal_code == "94133"
    assert info.city == "Pitea"

def test_parse_address_without_number():
    info = parse_address("Hamnplan, Pitea")

    assert info.street_name == "Hamnplan"
    assert info.street_number is None
    assert info.range_low is None
    assert info.city == "Pitea"

def test_parse_low_street_numbers_start_range_at_one():
    info = parse_address("Kyrkbrinken 3")

    assert (info.range_low, info.range_high) == (1, 10)

def test_parse_empty_address():
    assert parse_address(None).street_name is None
