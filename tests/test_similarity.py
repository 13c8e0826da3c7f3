import pytest

from crmdq.quality.similarity import common_prefix, jaro, jaro_winkler


def test_jaro_classic_pairs():
    assert jaro("MARTHA", "MARHTA") == pytest.approx(0.9444, abs=1e-4)
    assert jaro("DIXON", "DICKSONX") == pytest.approx(0.7667, abs=1e-4)


def test_jaro_winkler_boosts_shared_prefix():
    assert jaro_winkler("martha", "marhta") == pytest.approx(0.9611, abs=1e-4)
    assert jaro_winkler("martha", "marhta") > 0.9
    assert jaro_winkler("dixon", "dicksonx") == pytest.approx(0.8133, abs=1e-4)


def test_empty_inputs():
    assert jaro("", "") == 1.0
    assert jaro("abc", "") == 0.0
    assert jaro("", "abc") == 0.0
    assert jaro_winkler("", "") == 1.0


def test_case_insensitive_and_reflexive():
    assert jaro("ABC", "abc") == 1.0
    assert jaro_winkler("Jane Doe", "jane doe") == 1.0


def test_symmetric():
    pairs = [("jon smith", "john smith"), ("acme", "acme corp"), ("ü-name", "u-name")]
    for left, right in pairs:
        assert jaro(left, right) == pytest.approx(jaro(right, left))
        assert jaro_winkler(left, right) == pytest.approx(jaro_winkler(right, left))


def test_single_characters_without_window():
    assert jaro("a", "b") == 0.0
    assert jaro("a", "a") == 1.0


def test_uneven_lengths_stay_in_range():
    score = jaro_winkler("a", "a" + "z" * 200)
    assert 0.0 <= score <= 1.0


def test_prefix_capped_at_four():
    assert common_prefix("abcdef", "abcdeg") == 4
    assert common_prefix("Abc", "aBd") == 2
