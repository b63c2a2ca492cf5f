"""
SOUL FIELD MUTATOR TESTS

Чистый доменный слой: build_mutator / validate_change / review payload.
"""
import pytest

from domain.soul_fields import (
    SoulField,
    build_mutator,
    parse_faq,
    review_checklist,
    risk_level,
    validate_change,
)
from exceptions import UnsupportedChange


def apply(fields, *args):
    mutator = build_mutator(*args)
    mutator(fields)
    return fields


class TestListFields:

    def test_add_appends(self):
        fields = apply({"always_do": ["a"]}, "always_do", "add", "b")
        assert fields["always_do"] == ["a", "b"]

    def test_add_to_missing_field_creates_list(self):
        fields = apply({}, "always_do", "add", "b")
        assert fields["always_do"] == ["b"]

    def test_modify_replaces_current_value_in_place(self):
        fields = apply({"always_do": ["a", "b", "c"]}, "always_do", "modify", "B!", "b")
        assert fields["always_do"] == ["a", "B!", "c"]

    def test_modify_unknown_current_value_appends(self):
        fields = apply({"always_do": ["a"]}, "always_do", "modify", "z", "missing")
        assert fields["always_do"] == ["a", "z"]

    def test_remove_by_current_value(self):
        fields = apply({"traits": ["warm", "blunt"]}, "traits", "remove", "ignored", "blunt")
        assert fields["traits"] == ["warm"]

    def test_remove_without_current_value_uses_proposed_value(self):
        fields = apply({"traits": ["warm", "blunt"]}, "traits", "remove", "blunt")
        assert fields["traits"] == ["warm"]


class TestTextFields:

    def test_modify_sets_value(self):
        fields = apply({"communication_style": "old"}, "communication_style", "modify", "new")
        assert fields["communication_style"] == "new"

    def test_remove_clears_value(self):
        fields = apply({"greeting_style": "Hey!"}, "greeting_style", "remove", "Hey!")
        assert fields["greeting_style"] is None

    def test_add_is_unsupported(self):
        with pytest.raises(UnsupportedChange):
            validate_change("communication_style", "add", "more style")


class TestFaq:

    def test_parse_faq(self):
        assert parse_faq("Q: Open on Sunday? | A: No, Mon-Sat only.") == {
            "q": "Open on Sunday?",
            "a": "No, Mon-Sat only.",
        }

    def test_add_faq_appends_entry(self):
        fields = apply(
            {"faq_entries": [{"q": "x", "a": "y"}]},
            "faq_entries", "add_faq", "Q: Parking? | A: Free behind the building",
        )
        assert fields["faq_entries"][-1] == {"q": "Parking?", "a": "Free behind the building"}
        assert len(fields["faq_entries"]) == 2

    def test_malformed_faq_is_rejected(self):
        with pytest.raises(UnsupportedChange):
            validate_change("faq_entries", "add_faq", "Parking is free")

    def test_add_faq_outside_faq_field(self):
        with pytest.raises(UnsupportedChange):
            validate_change("always_do", "add_faq", "Q: a | A: b")

    def test_remove_faq_by_question(self):
        fields = apply(
            {"faq_entries": [{"q": "keep", "a": "1"}, {"q": "drop", "a": "2"}]},
            "faq_entries", "remove", "drop",
        )
        assert fields["faq_entries"] == [{"q": "keep", "a": "1"}]


class TestValidation:

    def test_unknown_field(self):
        with pytest.raises(UnsupportedChange):
            validate_change("favourite_color", "modify", "blue")

    def test_unknown_change_kind(self):
        with pytest.raises(UnsupportedChange):
            validate_change("always_do", "rewrite", "x")

    def test_empty_value(self):
        with pytest.raises(UnsupportedChange):
            validate_change("always_do", "add", "   ")

    def test_every_field_has_a_kind(self):
        from domain.soul_fields import FIELD_KINDS
        assert set(FIELD_KINDS) == set(SoulField)


class TestReviewPayload:

    def test_identity_anchor_is_high_risk(self):
        assert risk_level("core_values", "add") == "high"
        assert risk_level("name", "modify") == "high"

    def test_modify_rule_is_medium(self):
        assert risk_level("always_do", "modify") == "medium"
        assert risk_level("always_do", "remove") == "medium"

    def test_additive_rule_is_low(self):
        assert risk_level("always_do", "add") == "low"
        assert risk_level("faq_entries", "add_faq") == "low"

    def test_checklist_mentions_drift_context(self):
        checklist = review_checklist("always_do", "add", "3 complaints about tone")
        assert any("3 complaints about tone" in item for item in checklist)
