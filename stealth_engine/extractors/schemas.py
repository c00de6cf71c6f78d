"""Field schemas per data type and the registry that resolves them.

A schema declares, for each field, how an element is recognised as carrying
it (selectors and/or a regex), how its raw text is validated and cleaned,
and how much the field counts toward record quality.  Relationships are
cross-field checks a record must pass to be kept.

Adding a data type requires only building an :class:`ExtractionSchema` and
calling :meth:`SchemaRegistry.register`.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from stealth_engine.middleware.error_handler import UnknownDataTypeError

logger = logging.getLogger(__name__)

_NUMBER = re.compile(r"-?[\d,]*\.?\d+")


# ---------------------------------------------------------------------------
# Cleaning and validation helpers
# ---------------------------------------------------------------------------


def normalize_text(value: str) -> str:
    return re.sub(r"\s+", " ", value).strip()


def parse_number(value: str) -> float | None:
    """First number in *value*, ignoring currency symbols and separators."""
    match = _NUMBER.search(value.replace("$", ""))
    if not match:
        return None
    try:
        return float(match.group(0).replace(",", ""))
    except ValueError:
        return None


def _in_range(low: float, high: float, *, inclusive_low: bool = False) -> Callable[[str], bool]:
    def check(value: str) -> bool:
        number = parse_number(value)
        if number is None:
            return False
        above = number >= low if inclusive_low else number > low
        return above and number < high

    return check


def _length_between(low: int, high: int) -> Callable[[str], bool]:
    return lambda value: low < len(normalize_text(value)) < high


def clean_currency(value: str) -> float | None:
    return parse_number(value)


def clean_category(value: str) -> str:
    text = normalize_text(value)
    return text[:1].upper() + text[1:].lower()


_AGE = re.compile(r"(\d+)\s*(year|month|day)", re.IGNORECASE)


def clean_age(value: str) -> dict[str, Any] | str:
    match = _AGE.search(value)
    if not match:
        return normalize_text(value)
    return {"value": int(match.group(1)), "unit": match.group(2).lower()}


def clean_integer(value: str) -> int | None:
    digits = re.sub(r"[^0-9]", "", value)
    return int(digits) if digits else None


_KEY_VALUE = re.compile(r"^\s*([A-Za-z][A-Za-z0-9 /&%-]{0,40}?)\s*[:=]\s*(\S.*)$", re.DOTALL)


def clean_key_value(value: str) -> dict[str, str] | None:
    match = _KEY_VALUE.match(normalize_text(value))
    if not match:
        return None
    return {"label": match.group(1).strip(), "value": match.group(2).strip()}


# ---------------------------------------------------------------------------
# Schema types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FieldRule:
    """How one field is found, validated and cleaned.

    ``selectors`` use a small CSS subset matched against visible elements:
    ``tag``, ``.class`` (class contains the name), ``[class*="x"]`` and
    ``[attr]``.  ``pattern`` is searched in the element text; its first
    group, when present, is the value.  A ``labeled`` pattern names its
    field explicitly and claims its match before unlabeled patterns run.
    """

    name: str
    importance: float
    selectors: tuple[str, ...] = ()
    pattern: re.Pattern[str] | None = None
    labeled: bool = False
    validate: Callable[[str], bool] | None = None
    clean: Callable[[str], Any] = normalize_text
    numeric: bool = False


@dataclass(frozen=True)
class Relationship:
    """Cross-field check applied when both fields are present."""

    name: str
    fields: tuple[str, str]
    check: Callable[[float, float], bool]

    def holds(self, record: Mapping[str, Any]) -> bool | None:
        a, b = (record.get(f) for f in self.fields)
        if not isinstance(a, (int, float)) or not isinstance(b, (int, float)):
            return None
        if not a or not b:
            return None
        return self.check(a, b)


@dataclass(frozen=True)
class ExtractionSchema:
    data_type: str
    fields: tuple[FieldRule, ...]
    relationships: tuple[Relationship, ...] = ()
    expected_fields: int = 5
    # Each check scores an equal share of a record's pattern adherence
    pattern_checks: tuple[Callable[[Mapping[str, Any]], bool], ...] = ()
    derive: Callable[[dict[str, Any]], None] | None = None

    def field(self, name: str) -> FieldRule | None:
        for rule in self.fields:
            if rule.name == name:
                return rule
        return None

    @property
    def total_importance(self) -> float:
        return sum(rule.importance for rule in self.fields)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class SchemaRegistry:
    """Registry that maps data types to their extraction schemas."""

    def __init__(self) -> None:
        self._schemas: dict[str, ExtractionSchema] = {}

    def register(self, schema: ExtractionSchema) -> None:
        """Register *schema* under its ``data_type``.

        Raises
        ------
        ValueError
            If a schema for the same data type is already registered.
        """
        if schema.data_type in self._schemas:
            raise ValueError(f"Schema for data type '{schema.data_type}' is already registered")
        self._schemas[schema.data_type] = schema
        logger.info("Registered extraction schema for data type '%s'", schema.data_type)

    def get(self, data_type: str) -> ExtractionSchema:
        """Return the schema for *data_type*.

        Raises
        ------
        UnknownDataTypeError
            If no schema is registered for the given data type.
        """
        try:
            return self._schemas[data_type]
        except KeyError:
            raise UnknownDataTypeError(
                f"No extraction schema registered for data type '{data_type}'",
                data_type=data_type,
                supported=self.list_types(),
            ) from None

    def list_types(self) -> list[str]:
        return list(self._schemas.keys())


# ---------------------------------------------------------------------------
# Built-in schemas
# ---------------------------------------------------------------------------


def _derive_listing(record: dict[str, Any]) -> None:
    price, revenue, profit = record.get("price"), record.get("revenue"), record.get("profit")
    if price and revenue and "multiple" not in record:
        record["multiple"] = round(price / (revenue * 12), 1)
    if revenue and profit is not None and "margin" not in record:
        record["margin"] = round(profit / revenue * 100)


def _positive(name: str) -> Callable[[Mapping[str, Any]], bool]:
    return lambda r: isinstance(r.get(name), (int, float)) and r[name] > 0


LISTING_SCHEMA = ExtractionSchema(
    data_type="listing",
    fields=(
        FieldRule(
            "revenue",
            0.8,
            selectors=(".revenue", '[class*="revenue"]'),
            pattern=re.compile(r"(?:revenue|income)[:=\s]*\$?([\d,]+(?:\.\d+)?)", re.IGNORECASE),
            labeled=True,
            validate=_in_range(0, 10_000_000, inclusive_low=True),
            clean=clean_currency,
            numeric=True,
        ),
        FieldRule(
            "profit",
            0.8,
            selectors=(".profit", '[class*="profit"]'),
            pattern=re.compile(r"(?:profit|earnings)[:=\s]*\$?(-?[\d,]+(?:\.\d+)?)", re.IGNORECASE),
            labeled=True,
            validate=_in_range(-1_000_000, 10_000_000, inclusive_low=True),
            clean=clean_currency,
            numeric=True,
        ),
        FieldRule(
            "price",
            0.9,
            selectors=(".price", '[class*="price"]', "[data-price]"),
            pattern=re.compile(r"\$[\d,]+(?:\.\d{2})?"),
            validate=_in_range(0, 100_000_000),
            clean=clean_currency,
            numeric=True,
        ),
        FieldRule(
            "title",
            0.85,
            selectors=("h1", "h2", ".title", '[class*="title"]'),
            validate=_length_between(5, 200),
        ),
        FieldRule(
            "multiple",
            0.75,
            selectors=(".multiple", '[class*="multiple"]'),
            pattern=re.compile(r"(\d+(?:\.\d+)?)\s?[x×]\b", re.IGNORECASE),
            validate=_in_range(0, 100),
            clean=clean_currency,
            numeric=True,
        ),
        FieldRule(
            "category",
            0.6,
            selectors=(".category", '[class*="category"]', ".badge"),
            validate=_length_between(2, 50),
            clean=clean_category,
        ),
        FieldRule(
            "age",
            0.5,
            selectors=(".age", '[class*="established"]'),
            pattern=re.compile(r"(\d+\s*(?:year|month|day)s?)(?:\s*(?:old|ago))?", re.IGNORECASE),
            clean=clean_age,
        ),
        FieldRule(
            "traffic",
            0.7,
            selectors=(".traffic", '[class*="visitor"]', '[class*="traffic"]'),
            pattern=re.compile(r"([\d,]+)\s*(?:visitor|user|traffic|view)s?", re.IGNORECASE),
            clean=clean_integer,
            numeric=True,
        ),
    ),
    relationships=(
        Relationship("price-revenue", ("price", "revenue"), lambda p, r: 0.5 < p / (r * 12) < 10),
        Relationship("revenue-profit", ("revenue", "profit"), lambda r, p: -1 < p / r < 1),
    ),
    expected_fields=5,
    pattern_checks=(
        _positive("price"),
        lambda r: bool(r.get("price") and r.get("revenue") and r["revenue"] * 12 < r["price"]),
        lambda r: bool(r.get("revenue") and r.get("profit") is not None and r["profit"] < r["revenue"]),
        lambda r: isinstance(r.get("multiple"), (int, float)) and 0 < r["multiple"] < 10,
        lambda r: bool(r.get("title") or r.get("category")),
    ),
    derive=_derive_listing,
)

METRICS_SCHEMA = ExtractionSchema(
    data_type="metrics",
    fields=(
        FieldRule(
            "kpi",
            0.85,
            selectors=(".metric", ".stat", '[class*="metric"]', '[class*="stat"]'),
            validate=lambda value: clean_key_value(value) is not None,
            clean=clean_key_value,
        ),
    ),
    expected_fields=1,
    pattern_checks=(lambda r: isinstance(r.get("kpi"), dict) and bool(r["kpi"].get("value")),),
)


def default_registry() -> SchemaRegistry:
    registry = SchemaRegistry()
    registry.register(LISTING_SCHEMA)
    registry.register(METRICS_SCHEMA)
    return registry
