"""
Risk Classifier — deterministic urgency tiering for inbound messages.

No AI, no I/O.  The vocabulary below is a policy table: each tier maps a
symptom label to the phrases (English, French, Darija in Latin script,
Arabic script) that report it.  Operators extend it with a JSON file
(RISK_VOCABULARY_PATH) of the same shape; nothing else changes.

Scoring:
  1. Normalize the text (lowercase, strip diacritics / tashkeel)
  2. Match every phrase of every tier
  3. Highest-severity tier wins; nothing matched → LOW
"""

from __future__ import annotations

import json
import logging
import re
import unicodedata
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from mamaguard.gateway.events import Urgency

logger = logging.getLogger("gateway.agents.risk")

Vocabulary = dict[Urgency, dict[str, list[str]]]


# ── Danger-sign vocabulary: tier → symptom → phrases ──
DEFAULT_VOCABULARY: Vocabulary = {
    Urgency.CRITICAL: {
        "Haemorrhage": [
            "heavy bleeding", "bleeding a lot", "bleeding heavily",
            "hemorrhage", "haemorrhage", "lots of blood",
            "hémorragie", "saignement abondant", "saigne beaucoup", "beaucoup de sang",
            "dem bzaf", "kaynzel dem", "kayn dem bzaf",
            "نزيف", "دم بزاف", "كينزل الدم",
        ],
        "Loss of consciousness": [
            "fainted", "passed out", "lost consciousness", "unconscious",
            "évanouie", "évanoui", "perte de connaissance", "inconsciente",
            "ghma 3liya", "ghmat 3liya", "tay7at",
            "فقدت الوعي", "اغماء", "غمى علي",
        ],
        "Severe unremitting pain": [
            "severe pain", "unbearable pain", "worst pain", "pain won't stop",
            "pain will not stop",
            "douleur insupportable", "douleur très forte", "douleur intense",
            "wje3 bzaf", "wje3 ktir", "wje3 ma bghach ytsala",
            "ألم شديد", "وجع بزاف",
        ],
        "Absent fetal movement": [
            "baby not moving", "baby stopped moving", "baby is not moving",
            "no fetal movement", "can't feel the baby", "cannot feel the baby",
            "bébé ne bouge plus", "ne sens plus le bébé", "plus de mouvements",
            "lwld ma kayt7errekch", "ma bqach kayt7errek", "ma kan7ess bih",
            "الجنين لا يتحرك", "ما بقاش كيتحرك",
        ],
        "Seizure": [
            "seizure", "seizures", "convulsion", "convulsions",
            "crise convulsive",
            "تشنج", "تشنجات",
        ],
    },
    Urgency.HIGH: {
        "Severe headache / visual disturbance": [
            "severe headache", "terrible headache", "blurred vision", "blurry vision",
            "seeing spots", "seeing stars", "flashing lights", "can't see properly",
            "mal de tête sévère", "maux de tête violents", "vision floue", "je vois flou",
            "sda3 bzaf", "rassi kaydrni bzaf", "ma kanchofch mzyan",
            "صداع شديد", "صداع بزاف", "رؤية ضبابية", "زغللة",
        ],
        "High fever": [
            "high fever", "very high temperature",
            "forte fièvre", "fièvre élevée", "beaucoup de fièvre",
            "skhana bzaf", "skhana kbira",
            "حمى شديدة", "حرارة مرتفعة", "سخانة بزاف",
        ],
        "Reduced fetal movement": [
            "baby moving less", "less movement", "fewer movements", "moving less",
            "bouge moins", "moins de mouvements",
            "kayt7errek chwiya", "kayt7errek qlil",
            "حركة الجنين قليلة", "كيتحرك شوية",
        ],
        "Vaginal bleeding": [
            "bleeding", "spotting", "bleed",
            "saignement", "saigne", "du sang",
            "dem", "kaynzel chwiya dyal dem",
            "الدم", "نزول الدم",
        ],
        "Facial / hand swelling": [
            "swollen face", "face is swollen", "swollen hands", "sudden swelling",
            "visage gonflé", "mains gonflées",
            "wjhi tenfe5", "wjhi mnfou5",
            "انتفاخ الوجه", "وجهي منفوخ",
        ],
        "Ruptured membranes": [
            "water broke", "waters broke", "leaking fluid",
            "perte des eaux", "perdu les eaux",
            "نزول الماء",
        ],
    },
    Urgency.MEDIUM: {
        "Mild pain": [
            "mild pain", "a little pain", "some pain", "cramps", "cramping",
            "back pain", "stomach ache",
            "petite douleur", "douleur légère", "crampes", "mal au dos", "mal au ventre",
            "wje3 khfif", "chwiya dyal lwje3", "kersh kat3ddbni",
            "ألم خفيف", "وجع خفيف",
        ],
        "Fatigue": [
            "tired", "fatigue", "exhausted", "no energy",
            "fatiguée", "épuisée",
            "3yana", "3iyana", "mhlouka",
            "تعب", "عيانة", "مرهقة",
        ],
        "Nausea / vomiting": [
            "nausea", "nauseous", "vomiting", "throwing up", "vomited",
            "nausée", "nausées", "vomissements", "je vomis",
            "tqiya", "kanrdd",
            "غثيان", "تقيؤ", "ترجيع",
        ],
        "Dizziness": [
            "dizzy", "dizziness", "lightheaded", "head's spinning",
            "vertige", "vertiges", "étourdie",
            "dowkha", "kaydor biya rassi",
            "دوخة",
        ],
    },
}

# Symptoms that only count once the pregnancy is past a given week.
# Nausea in the first trimester is expected and stays LOW.
DEFAULT_WEEK_GATES: dict[str, int] = {
    "Nausea / vomiting": 13,
}

_ARABIC_CHARS = re.compile(r"[؀-ۿ]")

# Phone keyboards send typographic apostrophes; phrases are written with U+0027.
_APOSTROPHES = str.maketrans({"\u2018": "'", "\u2019": "'", "\u02bc": "'"})


class RiskAssessment(BaseModel):
    """Transient per-message classification result."""

    urgency: Urgency
    symptom: Optional[str] = None
    matched_phrases: list[str] = Field(default_factory=list)

    model_config = {"frozen": True}


@dataclass(frozen=True)
class PhraseRule:
    phrase: str
    urgency: Urgency
    symptom: str
    after_week: Optional[int] = None
    pattern: Optional[re.Pattern] = None

    def matches(self, text: str) -> bool:
        if self.pattern is None:
            # Arabic script: clitics attach to the word, so match substrings
            return self.phrase in text
        return bool(self.pattern.search(text))

    def applies_at(self, gestational_week: Optional[int]) -> bool:
        if self.after_week is None or gestational_week is None:
            return True
        return gestational_week > self.after_week


def normalize_text(text: str) -> str:
    """Lowercase, drop combining marks (accents, tashkeel), collapse whitespace."""
    decomposed = unicodedata.normalize("NFKD", text or "")
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    stripped = stripped.replace("ـ", "")  # tatweel
    stripped = stripped.translate(_APOSTROPHES)
    return " ".join(stripped.lower().split())


def build_rules(
    vocabulary: Vocabulary,
    week_gates: dict[str, int] | None = None,
) -> list[PhraseRule]:
    """Flatten a vocabulary table into precompiled rules, highest tier first."""
    gates = week_gates or {}
    rules: list[PhraseRule] = []
    seen: set[tuple[str, Urgency]] = set()
    for urgency in sorted(vocabulary, key=lambda u: u.rank, reverse=True):
        for symptom, phrases in vocabulary[urgency].items():
            for raw in phrases:
                phrase = normalize_text(raw)
                if not phrase or (phrase, urgency) in seen:
                    continue
                seen.add((phrase, urgency))
                pattern = None
                if not _ARABIC_CHARS.search(phrase):
                    pattern = re.compile(rf"(?<!\w){re.escape(phrase)}(?!\w)")
                rules.append(
                    PhraseRule(
                        phrase=phrase,
                        urgency=urgency,
                        symptom=symptom,
                        after_week=gates.get(symptom),
                        pattern=pattern,
                    )
                )
    return rules


def merge_vocabulary(base: Vocabulary, extra: dict) -> Vocabulary:
    """
    Merge an operator-supplied table into ``base`` (returns a new table).

    ``extra`` uses tier names as keys:
        {"critical": {"Haemorrhage": ["saignement massif"]}, "medium": {...}}
    Unknown tiers are rejected so typos do not silently drop phrases.
    """
    merged: Vocabulary = {
        urgency: {symptom: list(phrases) for symptom, phrases in table.items()}
        for urgency, table in base.items()
    }
    for tier_name, table in extra.items():
        try:
            urgency = Urgency(str(tier_name).lower())
        except ValueError:
            raise ValueError(f"Unknown urgency tier in vocabulary: {tier_name!r}") from None
        if not isinstance(table, dict):
            raise ValueError(f"Tier {tier_name!r} must map symptom → list of phrases")
        tier = merged.setdefault(urgency, {})
        for symptom, phrases in table.items():
            if isinstance(phrases, str):
                phrases = [phrases]
            tier.setdefault(symptom, []).extend(str(p) for p in phrases)
    return merged


def load_vocabulary_file(path: str | Path, base: Vocabulary | None = None) -> Vocabulary:
    """Read a JSON vocabulary extension and merge it into ``base``."""
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError("Risk vocabulary file must contain a JSON object")
    merged = merge_vocabulary(base or DEFAULT_VOCABULARY, data)
    logger.info("Loaded risk vocabulary extension from %s", path)
    return merged


class RiskClassifier:
    """
    Pure keyword classifier.

    Usage:
        classifier = RiskClassifier()
        assessment = classifier.classify("I have heavy bleeding")
    """

    def __init__(
        self,
        vocabulary: Vocabulary | None = None,
        week_gates: dict[str, int] | None = None,
    ) -> None:
        self._rules = build_rules(
            vocabulary or DEFAULT_VOCABULARY,
            DEFAULT_WEEK_GATES if week_gates is None else week_gates,
        )

    @classmethod
    def from_file(cls, path: str | Path | None) -> RiskClassifier:
        """Default table, extended by ``path`` when one is given."""
        if not path:
            return cls()
        return cls(vocabulary=load_vocabulary_file(path))

    @property
    def rule_count(self) -> int:
        return len(self._rules)

    def classify(self, text: str, gestational_week: int | None = None) -> RiskAssessment:
        normalized = normalize_text(text)
        if not normalized:
            return RiskAssessment(urgency=Urgency.LOW)

        best: PhraseRule | None = None
        matched: list[str] = []
        for rule in self._rules:
            if not rule.applies_at(gestational_week) or not rule.matches(normalized):
                continue
            matched.append(rule.phrase)
            if best is None or rule.urgency.rank > best.urgency.rank:
                best = rule

        if best is None:
            return RiskAssessment(urgency=Urgency.LOW)

        logger.debug("Risk: %s (%s) — matched %s", best.urgency.value, best.symptom, matched)
        return RiskAssessment(
            urgency=best.urgency,
            symptom=best.symptom,
            matched_phrases=matched,
        )
