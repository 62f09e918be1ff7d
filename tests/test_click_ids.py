"""Tests for click / session identifier generation."""
from clicktrail.services.click_ids import (
    generate_click_id,
    generate_session_id,
    is_valid_click_id,
)


def test_click_ids_are_prefixed_and_unique():
    ids = {generate_click_id() for _ in range(1000)}
    assert len(ids) == 1000
    assert all(i.startswith("clk_") for i in ids)


def test_session_ids_are_prefixed():
    sid = generate_session_id()
    assert sid.startswith("ses_")
    assert sid != generate_session_id()


def test_generated_ids_pass_validation():
    assert is_valid_click_id(generate_click_id())
    assert is_valid_click_id(generate_session_id())


def test_legacy_ids_without_prefix_are_accepted():
    assert is_valid_click_id("c123")
    assert is_valid_click_id("abc-DEF_123")


def test_malformed_ids_rejected():
    assert not is_valid_click_id(None)
    assert not is_valid_click_id("")
    assert not is_valid_click_id("has space")
    assert not is_valid_click_id("../etc/passwd")
    assert not is_valid_click_id("x" * 65)
