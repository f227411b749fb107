"""Tests for query and tag-name normalization."""
import pytest
from hypothesis import given
from hypothesis import strategies as st

from tagfinder.normalize import (
    expand_hyphenated_token,
    lowercase_ascii_only,
    normalize_query_string,
    normalize_tag_name,
    normalize_whitespace,
    remove_stopwords,
    strip_non_ascii,
    strip_punctuation_preserve_inner_hyphens,
    tokenize_query,
)


@given(st.text())
def test_normalize_query_string_is_idempotent(raw):
    once = normalize_query_string(raw)
    assert normalize_query_string(once) == once


@given(st.text())
def test_tokens_are_valid_tag_names(raw):
    for token in tokenize_query(raw):
        assert normalize_tag_name(token) == token


def test_tokenize_dedupes_in_first_seen_order():
    assert tokenize_query("sad sad pepe sad") == ["sad", "pepe"]


def test_tokenize_empty_and_stopword_only():
    assert tokenize_query("") == []
    assert tokenize_query("   \t\n ") == []
    assert tokenize_query("a the an") == []
    assert tokenize_query("a the pepe") == ["pepe"]


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("it, was! a (film-noir)", ["it", "was", "film-noir"]),
        ("--sad--", ["sad"]),
        ("sad - angry", ["sad", "angry"]),
        ("film--noir", ["film", "noir"]),
        ("Pepe's", ["pepe"]),
    ],
)
def test_punctuation_and_inner_hyphens(raw, expected):
    assert tokenize_query(raw) == expected


def test_only_ascii_letters_are_lowercased():
    assert lowercase_ascii_only("ABC Àb") == "abc Àb"


def test_non_ascii_is_removed_not_transliterated():
    assert strip_non_ascii("café") == "caf"
    assert tokenize_query("Ünïcode") == ["ncode"]


def test_whitespace_collapse():
    assert normalize_whitespace("  sad\t\n pepe  ") == "sad pepe"


def test_strip_punctuation_keeps_only_joining_hyphens():
    assert strip_punctuation_preserve_inner_hyphens("-sad-") == " sad "
    assert strip_punctuation_preserve_inner_hyphens("film-noir") == "film-noir"
    assert strip_punctuation_preserve_inner_hyphens("a-") == "a "


def test_remove_stopwords_is_whole_token():
    assert remove_stopwords(["the", "theme", "a", "ant"]) == ["theme", "ant"]
    assert remove_stopwords(["pepe"], stopwords={"pepe"}) == []


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("  Pepe ", "pepe"),
        ("FILM-NOIR", "film-noir"),
        ("sad, angry", None),
        ("two words", None),
        ("the", None),
        ("", None),
        ("!!!", None),
    ],
)
def test_normalize_tag_name(raw, expected):
    assert normalize_tag_name(raw) == expected


@pytest.mark.parametrize(
    "tag,expected",
    [
        ("film-noir", ["film-noir", "film", "noir"]),
        ("sad-sad", ["sad-sad", "sad"]),
        ("the-end", ["the-end", "end"]),
        ("pepe", ["pepe"]),
        ("", []),
        ("two words", []),
    ],
)
def test_expand_hyphenated_token(tag, expected):
    assert expand_hyphenated_token(tag) == expected
