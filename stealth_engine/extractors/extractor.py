"""Human-paced extraction of typed records from a page snapshot.

Pipeline for one snapshot:

1. analyse the visual context and pick a reading pattern
2. build the attention grid
3. walk visible, non-empty elements in reading order, chunk by chunk,
   pausing per chunk for as long as a person would take to read it
4. apply the data type's field rules to each element
5. drop records failing a cross-field relationship, derive computed
   fields, score quality
6. order records by quality and position, score the batch
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import math
import random
import re
from collections import Counter
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

from bs4 import BeautifulSoup

from stealth_engine.browser.engine import PageSnapshot, VisibleElement
from stealth_engine.extractors.schemas import (
    ExtractionSchema,
    FieldRule,
    SchemaRegistry,
    default_registry,
    normalize_text,
    parse_number,
)
from stealth_engine.extractors.semantic import SemanticAnalysis, analyze_text
from stealth_engine.extractors.visual import (
    PathPoint,
    analyze_visual_context,
    attention_at,
    build_attention_grid,
    select_reading_pattern,
)

logger = logging.getLogger(__name__)

READING_PATH_REPORTED = 10
REPEATED_CLASS_MIN = 4

_CLASS_CONTAINS = re.compile(r'^\[class\*="?([^"\]]+)"?\]$')
_ATTRIBUTE = re.compile(r"^\[([A-Za-z_:][\w:.-]*)\]$")


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ExtractedRecord:
    """Typed field map with quality and provenance.  Immutable."""

    fields: Mapping[str, Any]
    quality: float
    x: float = 0.0
    y: float = 0.0
    width: float = 0.0
    height: float = 0.0
    chunk_index: int = 0
    attention: float = 0.0

    def get(self, name: str, default: Any = None) -> Any:
        return self.fields.get(name, default)

    def to_dict(self) -> dict[str, Any]:
        return {
            **copy.deepcopy(dict(self.fields)),
            "_quality": round(self.quality, 4),
            "_metadata": {
                "position": {"x": self.x, "y": self.y},
                "size": {"width": self.width, "height": self.height},
                "chunk_index": self.chunk_index,
                "attention": round(self.attention, 4),
            },
        }


@dataclass(frozen=True)
class ExtractionConfidence:
    overall: float
    field_coverage: float
    data_consistency: float
    pattern_match: float
    item_count: int

    def to_dict(self) -> dict[str, float]:
        return {
            "overall": round(self.overall, 4),
            "field_coverage": round(self.field_coverage, 4),
            "data_consistency": round(self.data_consistency, 4),
            "pattern_match": round(self.pattern_match, 4),
            "item_count": self.item_count,
        }


@dataclass(frozen=True)
class ExtractionResult:
    records: tuple[ExtractedRecord, ...]
    confidence: ExtractionConfidence
    pattern: str
    elements_processed: int
    reading_path: tuple[PathPoint, ...] = ()
    chunk_delays_ms: tuple[float, ...] = ()
    discarded: int = 0
    parsing_strategy: str | None = None
    semantic: SemanticAnalysis | None = None

    @property
    def data_quality(self) -> float:
        if not self.records:
            return 0.0
        return sum(r.quality for r in self.records) / len(self.records)


@dataclass
class _RawRecord:
    fields: dict[str, Any]
    element: VisibleElement
    chunk_index: int
    attention: float = 0.0


# ---------------------------------------------------------------------------
# Element matching
# ---------------------------------------------------------------------------


def matches_selector(element: VisibleElement, selector: str) -> bool:
    """Match *element* against ``tag``, ``.cls``, ``[class*=x]`` or ``[attr]``."""
    if selector.startswith("."):
        name = selector[1:]
        return any(name in cls for cls in element.classes)
    contains = _CLASS_CONTAINS.match(selector)
    if contains:
        return any(contains.group(1) in cls for cls in element.classes)
    attribute = _ATTRIBUTE.match(selector)
    if attribute:
        return attribute.group(1) in element.attributes
    return element.tag.lower() == selector.lower()


def _search_unclaimed(pattern: re.Pattern[str], text: str, claimed: list[tuple[int, int]]):
    for match in pattern.finditer(text):
        start, end = match.span()
        if all(end <= a or start >= b for a, b in claimed):
            return match
    return None


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------


class IntelligentExtractor:
    """Extracts confidence-scored records the way a person reads a page.

    Parameters
    ----------
    sleep:
        Awaitable used for per-chunk reading pauses, in seconds.  Tests
        inject a recorder instead of ``asyncio.sleep``.
    rng:
        Jitter source for reading pauses and spot-reading paths.
    """

    def __init__(
        self,
        registry: SchemaRegistry | None = None,
        *,
        chunk_size: int = 10,
        words_per_minute: int = 250,
        min_chunk_delay_ms: float = 500,
        max_chunk_delay_ms: float = 5000,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.registry = registry or default_registry()
        self.chunk_size = max(1, chunk_size)
        self.words_per_minute = max(1, words_per_minute)
        self.min_chunk_delay_ms = min_chunk_delay_ms
        self.max_chunk_delay_ms = max(min_chunk_delay_ms, max_chunk_delay_ms)
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._stats: dict[str, Any] = {
            "extractions": 0,
            "records_extracted": 0,
            "records_discarded": 0,
            "elements_processed": 0,
            "last_confidence": None,
            "patterns_used": Counter(),
        }

    async def extract(
        self,
        snapshot: PageSnapshot,
        data_type: str = "listing",
        *,
        selector_overrides: Iterable[tuple[str, str]] = (),
        parsing_strategy: str | None = None,
    ) -> ExtractionResult:
        schema = self.registry.get(data_type)

        visual = analyze_visual_context(snapshot)
        pattern = select_reading_pattern(visual)
        grid = build_attention_grid(visual)
        path = pattern.generate_path(snapshot.viewport, self._rng)

        elements = self.visible_elements(snapshot)
        if parsing_strategy == "pattern":
            elements = self._repeated_elements(snapshot, elements) or elements

        override_texts = self._override_texts(snapshot.html, schema, selector_overrides)
        relaxed = parsing_strategy == "flexible"

        raw: list[_RawRecord] = []
        delays: list[float] = []
        for index in range(0, len(elements), self.chunk_size):
            chunk = elements[index:index + self.chunk_size]
            delay = self.reading_delay_ms(chunk)
            delays.append(delay)
            await self._sleep(delay / 1000)

            chunk_index = index // self.chunk_size
            for element in chunk:
                values = self.extract_fields(element.text, schema, element, override_texts, relaxed)
                if values:
                    attention = attention_at(grid, snapshot.viewport, element.x, element.y)
                    raw.append(_RawRecord(values, element, chunk_index, attention))

        semantic = None
        if parsing_strategy == "semantic":
            semantic = analyze_text(snapshot.text)
            if not raw:
                page_record = self._semantic_record(snapshot, schema, semantic)
                if page_record:
                    raw.append(page_record)

        records, discarded = self.validate_and_enhance(raw, schema)
        confidence = self.calculate_confidence(records, schema)

        self._stats["extractions"] += 1
        self._stats["records_extracted"] += len(records)
        self._stats["records_discarded"] += discarded
        self._stats["elements_processed"] += len(elements)
        self._stats["last_confidence"] = confidence.overall
        self._stats["patterns_used"][pattern.name] += 1

        logger.info(
            "Extracted %d %s records using %s",
            len(records),
            data_type,
            pattern.name,
            extra={
                "target_url": snapshot.url,
                "records_extracted": len(records),
                "confidence": round(confidence.overall, 4),
            },
        )

        return ExtractionResult(
            records=tuple(records),
            confidence=confidence,
            pattern=pattern.name,
            elements_processed=len(elements),
            reading_path=tuple(path[:READING_PATH_REPORTED]),
            chunk_delays_ms=tuple(delays),
            discarded=discarded,
            parsing_strategy=parsing_strategy,
            semantic=semantic,
        )

    # ------------------------------------------------------------------
    # Element preparation
    # ------------------------------------------------------------------

    @staticmethod
    def visible_elements(snapshot: PageSnapshot) -> list[VisibleElement]:
        """Non-empty visible elements, top-left first."""
        elements = [el for el in snapshot.visible_elements if el.text and el.text.strip()]
        return sorted(elements, key=lambda el: el.y + el.x * 0.5)

    @staticmethod
    def _repeated_elements(snapshot: PageSnapshot, elements: list[VisibleElement]) -> list[VisibleElement]:
        """Elements sharing the page's most repeated class, one per card."""
        soup = BeautifulSoup(snapshot.html or "", "html.parser")
        counts = Counter(cls for el in soup.find_all(class_=True) for cls in el.get("class", []))
        repeated = [cls for cls, count in counts.most_common() if count >= REPEATED_CLASS_MIN]
        if not repeated:
            return []
        target = repeated[0]
        visible = [el for el in elements if target in el.classes]
        if visible:
            return visible
        return [
            VisibleElement(
                tag=node.name,
                text=node.get_text(" ", strip=True),
                y=float(order * 10),
                classes=tuple(node.get("class", [])),
            )
            for order, node in enumerate(soup.find_all(class_=target))
            if node.get_text(strip=True)
        ]

    @staticmethod
    def _override_texts(
        html: str,
        schema: ExtractionSchema,
        overrides: Iterable[tuple[str, str]],
    ) -> dict[str, set[str]]:
        """Texts of nodes matched by replacement selectors, per field."""
        mapping = dict(overrides)
        if not mapping or not html:
            return {}
        soup = BeautifulSoup(html, "html.parser")
        texts: dict[str, set[str]] = {}
        for rule in schema.fields:
            for selector in rule.selectors:
                replacement = mapping.get(selector)
                if not replacement:
                    continue
                try:
                    nodes = soup.select(replacement)
                except Exception as exc:
                    logger.warning("Replacement selector %r unusable: %s", replacement, exc)
                    continue
                texts.setdefault(rule.name, set()).update(
                    normalize_text(node.get_text(" ", strip=True)) for node in nodes
                )
        return texts

    # ------------------------------------------------------------------
    # Pacing
    # ------------------------------------------------------------------

    def reading_delay_ms(self, elements: Iterable[VisibleElement]) -> float:
        words = sum(len(el.text.split()) for el in elements if el.text)
        reading = words / self.words_per_minute * 60000
        variation = self._rng.uniform(0.8, 1.2)
        return max(self.min_chunk_delay_ms, min(self.max_chunk_delay_ms, reading * variation))

    # ------------------------------------------------------------------
    # Field extraction
    # ------------------------------------------------------------------

    @staticmethod
    def extract_fields(
        text: str,
        schema: ExtractionSchema,
        element: VisibleElement | None = None,
        override_texts: Mapping[str, set[str]] | None = None,
        relaxed: bool = False,
    ) -> dict[str, Any]:
        """Apply *schema*'s field rules to one element's text.

        Labelled patterns claim their spans first so an unlabelled pattern
        (a bare price) cannot take a figure that belongs to a labelled
        field (revenue).
        """
        text = normalize_text(text or "")
        if not text:
            return {}
        override_texts = override_texts or {}
        claimed: list[tuple[int, int]] = []
        values: dict[str, Any] = {}

        ordered: list[FieldRule] = sorted(schema.fields, key=lambda rule: not rule.labeled)
        for rule in ordered:
            raw: str | None = None
            if element is not None and any(matches_selector(element, s) for s in rule.selectors):
                raw = text
            elif text in override_texts.get(rule.name, ()):
                raw = text
            elif rule.pattern is not None:
                match = _search_unclaimed(rule.pattern, text, claimed)
                if match:
                    raw = match.group(1) if match.groups() else match.group(0)
                    claimed.append(match.span())
            if raw is None:
                continue
            if rule.validate is not None and not relaxed and not rule.validate(raw):
                continue
            value = rule.clean(raw)
            if value is None or value == "":
                continue
            values[rule.name] = value
        return values

    def _semantic_record(
        self,
        snapshot: PageSnapshot,
        schema: ExtractionSchema,
        semantic: SemanticAnalysis,
    ) -> _RawRecord | None:
        values = self.extract_fields(snapshot.text, schema)
        price_rule = schema.field("price")
        if price_rule is not None and "price" not in values and semantic.entities.money:
            amount = parse_number(semantic.entities.money[0])
            if amount is not None and amount > 0:
                values["price"] = amount
        if not values:
            return None
        return _RawRecord(values, VisibleElement(tag="body", text=snapshot.text), 0)

    # ------------------------------------------------------------------
    # Validation, quality and confidence
    # ------------------------------------------------------------------

    def validate_and_enhance(
        self, raw: list[_RawRecord], schema: ExtractionSchema
    ) -> tuple[list[ExtractedRecord], int]:
        records: list[ExtractedRecord] = []
        seen: set[str] = set()
        discarded = 0

        for item in raw:
            values = dict(item.fields)
            failed = [rel.name for rel in schema.relationships if rel.holds(values) is False]
            if failed:
                discarded += 1
                logger.debug("Discarding record failing %s: %s", ", ".join(failed), values)
                continue

            if schema.derive is not None:
                schema.derive(values)

            key = json.dumps(values, sort_keys=True, default=str)
            if key in seen:
                continue
            seen.add(key)

            el = item.element
            records.append(
                ExtractedRecord(
                    fields=MappingProxyType(values),
                    quality=self.quality_score(values, schema),
                    x=el.x,
                    y=el.y,
                    width=el.width,
                    height=el.height,
                    chunk_index=item.chunk_index,
                    attention=item.attention,
                )
            )

        records.sort(key=lambda r: r.quality * 0.7 + (1 - r.y / 1000) * 0.3, reverse=True)
        return records, discarded

    @staticmethod
    def quality_score(values: Mapping[str, Any], schema: ExtractionSchema) -> float:
        total = schema.total_importance
        if total <= 0:
            return 0.0
        present = sum(rule.importance for rule in schema.fields if values.get(rule.name) is not None)
        return min(1.0, max(0.0, present / total))

    def calculate_confidence(
        self, records: list[ExtractedRecord], schema: ExtractionSchema
    ) -> ExtractionConfidence:
        if not records:
            return ExtractionConfidence(0.0, 0.0, 0.0, 0.0, 0)
        coverage = self._field_coverage(records, schema)
        consistency = self._data_consistency(records)
        pattern = self._pattern_match(records, schema)
        overall = min(1.0, max(0.0, (coverage + consistency + pattern) / 3))
        return ExtractionConfidence(overall, coverage, consistency, pattern, len(records))

    @staticmethod
    def _field_coverage(records: list[ExtractedRecord], schema: ExtractionSchema) -> float:
        total_fields = sum(len(r.fields) for r in records)
        return min(1.0, total_fields / len(records) / max(1, schema.expected_fields))

    @staticmethod
    def _data_consistency(records: list[ExtractedRecord]) -> float:
        if len(records) < 2:
            return 1.0
        stats: dict[str, dict[str, Any]] = {}
        for record in records:
            for name, value in record.fields.items():
                entry = stats.setdefault(name, {"types": set(), "values": []})
                kind = "number" if isinstance(value, (int, float)) and not isinstance(value, bool) else type(value).__name__
                entry["types"].add(kind)
                entry["values"].append(value)

        scores = []
        for entry in stats.values():
            type_consistency = 1 / len(entry["types"])
            range_consistency = 1.0
            if entry["types"] == {"number"}:
                values = entry["values"]
                mean = sum(values) / len(values)
                std = math.sqrt(sum((v - mean) ** 2 for v in values) / len(values))
                if mean == 0:
                    range_consistency = 1.0 if std == 0 else 0.0
                else:
                    range_consistency = max(0.0, 1 - abs(std / mean))
            scores.append((type_consistency + range_consistency) / 2)
        return sum(scores) / len(scores) if scores else 0.0

    @staticmethod
    def _pattern_match(records: list[ExtractedRecord], schema: ExtractionSchema) -> float:
        checks = schema.pattern_checks
        if not checks:
            return 1.0
        total = 0.0
        for record in records:
            total += sum(1 for check in checks if check(record.fields)) / len(checks)
        return total / len(records)

    def get_stats(self) -> dict[str, Any]:
        stats = dict(self._stats)
        stats["patterns_used"] = dict(self._stats["patterns_used"])
        return stats
