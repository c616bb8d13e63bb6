import pytest

from logrelay.errors import AddressNotFoundError, AmbiguousSelectionError
from logrelay.selector import (
    Ambiguous, Candidate, NotFound, Selected, require, select_origin, select_tenant, select_topic,
)

TWO_ORIGINS = [Candidate("localhost:3000", 12), Candidate("localhost:5173", 4)]


def test_zero_candidates_not_found():
    sel = select_origin([], None)
    assert isinstance(sel, NotFound)
    assert "No origins connected" in sel.message


def test_single_candidate_auto_selected():
    sel = select_origin([Candidate("localhost:3000", 3)], None)
    assert sel == Selected("localhost:3000", auto=True, message=sel.message)
    assert sel.auto


def test_two_origins_without_request_is_ambiguous_listing_both():
    sel = select_origin(TWO_ORIGINS, "")
    assert isinstance(sel, Ambiguous)
    assert [c.name for c in sel.candidates] == ["localhost:3000", "localhost:5173"]
    assert "- localhost:3000 (12 entries)" in sel.message
    assert "Please specify origin" in sel.message


def test_explicit_request_selects_without_auto():
    sel = select_origin(TWO_ORIGINS, "localhost:5173")
    assert isinstance(sel, Selected)
    assert sel.name == "localhost:5173" and not sel.auto


def test_explicit_request_for_missing_candidate_lists_real_ones():
    sel = select_origin(TWO_ORIGINS, "localhost:9999")
    assert isinstance(sel, NotFound)
    assert sel.requested == "localhost:9999"
    assert [c.name for c in sel.candidates] == ["localhost:3000", "localhost:5173"]
    assert "localhost:5173" in sel.message


def test_lone_browser_topic_auto_selected():
    sel = select_topic([Candidate("browser", 40)], None)
    assert isinstance(sel, Selected) and sel.auto


def test_single_structured_topic_auto_selected():
    sel = select_topic([Candidate("user-actions", 2)], None)
    assert isinstance(sel, Selected) and sel.name == "user-actions"


def test_several_topics_are_ambiguous_even_with_browser_among_them():
    sel = select_topic([Candidate("browser", 40), Candidate("user-actions", 2)], None)
    assert isinstance(sel, Ambiguous)
    assert 'get_logs(topic="browser")' in sel.message


def test_tenant_is_never_guessed():
    sel = select_tenant([Candidate("shop", 1)], None)
    assert isinstance(sel, NotFound)
    assert "Missing required parameter: tenant" in sel.message
    assert isinstance(select_tenant([Candidate("shop", 1)], "shop"), Selected)


def test_require_raises_matching_errors():
    with pytest.raises(AmbiguousSelectionError) as amb:
        require(select_origin(TWO_ORIGINS, None))
    assert amb.value.candidates == ["localhost:3000", "localhost:5173"]
    with pytest.raises(AddressNotFoundError) as nf:
        require(select_topic([], None))
    assert nf.value.parameter == "topic"
    assert require(select_origin(TWO_ORIGINS, "localhost:3000")).name == "localhost:3000"
