"""
Tests for the Risk Classifier.

Tests cover:
  - Tier detection per language (English, French, Darija, Arabic)
  - Highest tier wins when several match
  - Unmatched text → LOW
  - Purity (same input, same output)
  - Word-boundary matching (no "bleeding" inside unrelated words)
  - Gestational-week gate for nausea
  - Operator vocabulary extension (merge + JSON file)
"""

import json

import pytest

from mamaguard.gateway.agents.risk_classifier import (
    DEFAULT_VOCABULARY,
    RiskClassifier,
    load_vocabulary_file,
    merge_vocabulary,
    normalize_text,
)
from mamaguard.gateway.events import Urgency


@pytest.fixture
def classifier():
    return RiskClassifier()


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Tiers
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestTiers:

    @pytest.mark.parametrize("text", [
        "I have heavy bleeding since this morning",
        "Hémorragie depuis ce matin",
        "kaynzel dem bzaf",
        "عندي نزيف",
    ])
    def test_haemorrhage_is_critical(self, classifier, text):
        result = classifier.classify(text)
        assert result.urgency == Urgency.CRITICAL
        assert result.symptom == "Haemorrhage"

    def test_absent_fetal_movement_is_critical(self, classifier):
        result = classifier.classify("The baby stopped moving since yesterday")
        assert result.urgency == Urgency.CRITICAL
        assert result.symptom == "Absent fetal movement"

    def test_headache_and_blurred_vision_is_high(self, classifier):
        result = classifier.classify("severe headache and blurred vision")
        assert result.urgency == Urgency.HIGH
        assert result.symptom == "Severe headache / visual disturbance"
        assert "blurred vision" in result.matched_phrases

    def test_french_fever_is_high(self, classifier):
        assert classifier.classify("J'ai une forte fièvre").urgency == Urgency.HIGH

    def test_darija_fatigue_is_medium(self, classifier):
        result = classifier.classify("ana 3yana bzaf lyoum")
        assert result.urgency == Urgency.MEDIUM
        assert result.symptom == "Fatigue"

    def test_unmatched_text_is_low(self, classifier):
        result = classifier.classify("no pain, feeling fine")
        assert result.urgency == Urgency.LOW
        assert result.symptom is None
        assert result.matched_phrases == []

    def test_empty_text_is_low(self, classifier):
        assert classifier.classify("").urgency == Urgency.LOW
        assert classifier.classify("   ").urgency == Urgency.LOW


class TestPriority:

    def test_critical_beats_medium(self, classifier):
        result = classifier.classify("I am tired and now I have heavy bleeding")
        assert result.urgency == Urgency.CRITICAL
        assert "tired" in result.matched_phrases

    def test_generic_bleeding_is_high_but_heavy_is_critical(self, classifier):
        assert classifier.classify("a little bleeding").urgency == Urgency.HIGH
        assert classifier.classify("bleeding heavily").urgency == Urgency.CRITICAL

    def test_pure_and_deterministic(self, classifier):
        text = "dizzy and blurred vision"
        first = classifier.classify(text)
        second = classifier.classify(text)
        assert first == second


class TestMatching:

    def test_case_and_accents_ignored(self, classifier):
        assert classifier.classify("HEMORRAGIE").urgency == Urgency.CRITICAL

    def test_word_boundaries(self, classifier):
        # "bleed" must not match inside "bleeder"
        assert classifier.classify("the bleeder valve on the radiator").urgency == Urgency.LOW

    def test_normalize_text(self):
        assert normalize_text("  Vision   FLOUE\n") == "vision floue"
        assert normalize_text("évanouie") == "evanouie"
        assert normalize_text("can’t ‘feel’ itʼs") == "can't 'feel' it's"

    @pytest.mark.parametrize("apostrophe", ["’", "‘", "ʼ", "'"])
    @pytest.mark.parametrize("text, urgency", [
        ("I can{a}t feel the baby since this morning", Urgency.CRITICAL),
        ("the pain won{a}t stop", Urgency.CRITICAL),
        ("I can{a}t see properly today", Urgency.HIGH),
        ("my head{a}s spinning when I stand", Urgency.MEDIUM),
    ])
    def test_any_apostrophe_matches(self, classifier, apostrophe, text, urgency):
        assert classifier.classify(text.format(a=apostrophe)).urgency == urgency


class TestWeekGate:

    def test_nausea_in_first_trimester_stays_low(self, classifier):
        assert classifier.classify("nausea every morning", gestational_week=9).urgency == Urgency.LOW

    def test_nausea_after_first_trimester_is_medium(self, classifier):
        assert classifier.classify("nausea every morning", gestational_week=30).urgency == Urgency.MEDIUM

    def test_nausea_without_known_week_counts(self, classifier):
        assert classifier.classify("nausea every morning").urgency == Urgency.MEDIUM


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Vocabulary extension
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestVocabularyExtension:

    def test_merge_adds_phrases_without_touching_base(self):
        merged = merge_vocabulary(DEFAULT_VOCABULARY, {"critical": {"Haemorrhage": ["sang partout"]}})
        assert "sang partout" in merged[Urgency.CRITICAL]["Haemorrhage"]
        assert "sang partout" not in DEFAULT_VOCABULARY[Urgency.CRITICAL]["Haemorrhage"]

    def test_merge_accepts_single_phrase_and_new_symptom(self):
        merged = merge_vocabulary(DEFAULT_VOCABULARY, {"high": {"Chest pain": "chest pain"}})
        assert merged[Urgency.HIGH]["Chest pain"] == ["chest pain"]

    def test_unknown_tier_rejected(self):
        with pytest.raises(ValueError):
            merge_vocabulary(DEFAULT_VOCABULARY, {"urgent": {"X": ["y"]}})

    def test_from_file(self, tmp_path):
        path = tmp_path / "vocab.json"
        path.write_text(json.dumps({"high": {"Chest pain": ["chest pain"]}}), encoding="utf-8")

        classifier = RiskClassifier.from_file(path)
        result = classifier.classify("sudden chest pain")
        assert result.urgency == Urgency.HIGH
        assert result.symptom == "Chest pain"
        assert classifier.rule_count > RiskClassifier().rule_count

    def test_from_file_without_path_uses_defaults(self):
        assert RiskClassifier.from_file(None).rule_count == RiskClassifier().rule_count

    def test_file_must_be_object(self, tmp_path):
        path = tmp_path / "vocab.json"
        path.write_text("[]", encoding="utf-8")
        with pytest.raises(ValueError):
            load_vocabulary_file(path)
