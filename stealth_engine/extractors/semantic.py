"""Lightweight semantic pass over page text.

Entity recognition (money, percentages, durations, labelled business
figures), frequent key phrases and an extractive summary.  Used when
element-level extraction finds nothing and parsing falls back to the page
text as a whole.
"""

from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass

_TOKEN = re.compile(r"[A-Za-z0-9$%][\w$%.,'-]*")
_MONEY = re.compile(
    r"\$[\d,]+(?:\.\d{2})?|\b\d+(?:\.\d+)?\s*(?:USD|dollars?|k|m|million|billion)\b",
    re.IGNORECASE,
)
_PERCENT = re.compile(r"\d+(?:\.\d+)?%|\b\d+\s*percent\b", re.IGNORECASE)
_DURATION = re.compile(r"\b\d+\s*(?:year|month|week|day|hour)s?(?:\s*(?:ago|old))?\b", re.IGNORECASE)

BUSINESS_TERMS: tuple[str, ...] = ("revenue", "profit", "sales", "customers", "traffic", "conversion")
_BUSINESS = {
    term: re.compile(rf"\b{term}[:\s]+[$\d,]+", re.IGNORECASE) for term in BUSINESS_TERMS
}

STOP_WORDS = frozenset({"the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for"})


@dataclass(frozen=True)
class Entities:
    money: tuple[str, ...] = ()
    percentage: tuple[str, ...] = ()
    time: tuple[str, ...] = ()
    business: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, list[str]]:
        return {
            "money": list(self.money),
            "percentage": list(self.percentage),
            "time": list(self.time),
            "business": list(self.business),
        }


@dataclass(frozen=True)
class SemanticAnalysis:
    entities: Entities
    key_phrases: tuple[tuple[str, int], ...] = ()
    summary: str = ""
    token_count: int = 0


def tokenize(text: str) -> list[str]:
    return [token.strip(".,") for token in _TOKEN.findall(text) if token.strip(".,")]


def recognize_entities(text: str) -> Entities:
    business: list[str] = []
    for pattern in _BUSINESS.values():
        business.extend(match.group(0) for match in pattern.finditer(text))
    return Entities(
        money=tuple(m.group(0) for m in _MONEY.finditer(text)),
        percentage=tuple(m.group(0) for m in _PERCENT.finditer(text)),
        time=tuple(m.group(0) for m in _DURATION.finditer(text)),
        business=tuple(business),
    )


def extract_key_phrases(tokens: list[str], limit: int = 5) -> list[tuple[str, int]]:
    """Most frequent bigrams and trigrams not starting with a stop word."""
    phrases: Counter[str] = Counter()
    for i in range(len(tokens) - 1):
        if tokens[i].lower() in STOP_WORDS:
            continue
        phrases[f"{tokens[i]} {tokens[i + 1]}"] += 1
        if i < len(tokens) - 2:
            phrases[f"{tokens[i]} {tokens[i + 1]} {tokens[i + 2]}"] += 1
    # Counter.most_common keeps insertion order among ties
    return phrases.most_common(limit)


def summarize(text: str, key_phrases: list[tuple[str, int]], sentences: int = 3) -> str:
    parts = [s.strip() for s in re.split(r"[.!?]+", text) if len(s.strip()) > 10]
    if len(parts) <= sentences:
        return text.strip()

    def score(index: int) -> float:
        sentence = parts[index].lower()
        value = sum(count for phrase, count in key_phrases if phrase.lower() in sentence)
        if re.search(r"\d", sentence):
            value += 2
        return value + (len(parts) - index) / len(parts)

    chosen = sorted(sorted(range(len(parts)), key=score, reverse=True)[:sentences])
    return ". ".join(parts[i] for i in chosen) + "."


def analyze_text(text: str) -> SemanticAnalysis:
    tokens = tokenize(text)
    phrases = extract_key_phrases(tokens)
    return SemanticAnalysis(
        entities=recognize_entities(text),
        key_phrases=tuple(phrases),
        summary=summarize(text, phrases),
        token_count=len(tokens),
    )
