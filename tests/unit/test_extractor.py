"""Unit tests for the human-paced extractor."""

from __future__ import annotations

import random

import pytest

from stealth_engine.browser.engine import PageSnapshot, VisibleElement
from stealth_engine.extractors.extractor import IntelligentExtractor, matches_selector
from stealth_engine.extractors.schemas import LISTING_SCHEMA
from stealth_engine.middleware.error_handler import UnknownDataTypeError
from tests.conftest import SleepRecorder, listing_snapshot


def _snapshot(*elements: VisibleElement, html: str = "<html><body></body></html>") -> PageSnapshot:
    return PageSnapshot(url="https://market.test/p", html=html, visible_elements=elements)


class TestListingExtraction:
    @pytest.mark.asyncio
    async def test_labelled_revenue_and_price(self, extractor, sleep):
        result = await extractor.extract(listing_snapshot())

        assert len(result.records) == 1
        record = result.records[0]
        assert record.get("revenue") == 5000.0
        assert record.get("price") == 120000.0
        assert record.get("multiple") == 2.0
        assert record.quality == pytest.approx(2.45 / 5.9)
        assert result.elements_processed == 1
        assert result.discarded == 0
        assert len(sleep.calls) == 1

    @pytest.mark.asyncio
    async def test_confidence_components(self, extractor):
        result = await extractor.extract(listing_snapshot())
        confidence = result.confidence
        assert confidence.field_coverage == pytest.approx(0.6)
        assert confidence.data_consistency == 1.0
        assert confidence.pattern_match == pytest.approx(0.6)
        assert confidence.overall == pytest.approx(2.2 / 3)
        assert confidence.item_count == 1

    @pytest.mark.asyncio
    async def test_sparse_page_uses_z_pattern(self, extractor):
        result = await extractor.extract(listing_snapshot())
        assert result.pattern == "Z-pattern"
        assert len(result.reading_path) == 10

    @pytest.mark.asyncio
    async def test_implausible_multiple_is_discarded(self, extractor):
        result = await extractor.extract(listing_snapshot(texts=("Price: $1,000,000 Revenue: $1,000/mo",)))
        assert result.records == ()
        assert result.discarded == 1
        assert result.confidence.overall == 0.0
        assert result.data_quality == 0.0

    @pytest.mark.asyncio
    async def test_duplicates_collapse(self, extractor):
        result = await extractor.extract(listing_snapshot(texts=(
            "Price: $120,000 Revenue: $5,000/mo",
            "Price: $120,000 Revenue: $5,000/mo",
        )))
        assert len(result.records) == 1

    @pytest.mark.asyncio
    async def test_records_ordered_by_quality_and_position(self, extractor):
        result = await extractor.extract(listing_snapshot(texts=(
            "Price: $120,000 Revenue: $5,000/mo",
            "Great shop 3 years old Price: $240,000 Revenue: $10,000/mo",
        )))
        assert [r.get("price") for r in result.records] == [240000.0, 120000.0]
        assert result.records[0].get("age") == {"value": 3, "unit": "year"}

    @pytest.mark.asyncio
    async def test_record_dict_carries_metadata(self, extractor):
        result = await extractor.extract(listing_snapshot())
        data = result.records[0].to_dict()
        assert data["_quality"] == round(2.45 / 5.9, 4)
        assert data["_metadata"]["position"] == {"x": 20.0, "y": 100.0}
        assert data["_metadata"]["chunk_index"] == 0

    @pytest.mark.asyncio
    async def test_unknown_data_type(self, extractor):
        with pytest.raises(UnknownDataTypeError) as exc_info:
            await extractor.extract(listing_snapshot(), "reviews")
        assert exc_info.value.details["supported"] == ["listing", "metrics"]


class TestPacing:
    @pytest.mark.asyncio
    async def test_one_pause_per_chunk(self, sleep):
        extractor = IntelligentExtractor(chunk_size=2, sleep=sleep, rng=random.Random(1))
        texts = tuple(f"Price: ${n}00,000 Revenue: ${n}0,000/mo" for n in range(1, 6))
        result = await extractor.extract(listing_snapshot(texts=texts))
        assert len(sleep.calls) == 3
        assert len(result.chunk_delays_ms) == 3
        assert [r.chunk_index for r in sorted(result.records, key=lambda r: r.y)] == [0, 0, 1, 1, 2]

    @pytest.mark.asyncio
    async def test_delay_floor(self, sleep):
        extractor = IntelligentExtractor(words_per_minute=10_000, sleep=sleep, rng=random.Random(1))
        result = await extractor.extract(listing_snapshot())
        assert result.chunk_delays_ms == (500,)
        assert sleep.calls == [0.5]

    @pytest.mark.asyncio
    async def test_delay_ceiling(self, sleep):
        extractor = IntelligentExtractor(words_per_minute=1, sleep=sleep, rng=random.Random(1))
        await extractor.extract(listing_snapshot())
        assert sleep.calls == [5.0]

    def test_reading_delay_scales_with_words(self):
        extractor = IntelligentExtractor(rng=random.Random(4))
        element = VisibleElement(tag="p", text="one two three four")
        for _ in range(20):
            assert 768 <= extractor.reading_delay_ms([element]) <= 1152

    @pytest.mark.asyncio
    async def test_no_elements_no_pause(self, extractor, sleep):
        result = await extractor.extract(_snapshot())
        assert sleep.calls == []
        assert result.elements_processed == 0


class TestParsingStrategies:
    @pytest.mark.asyncio
    async def test_selector_override_recognises_field(self, extractor):
        element = VisibleElement(tag="div", text="Profitable SaaS business", classes=("headline",))
        html = '<html><body><div class="headline">Profitable SaaS business</div></body></html>'
        snapshot = _snapshot(element, html=html)

        plain = await extractor.extract(snapshot)
        assert plain.records == ()

        result = await extractor.extract(snapshot, selector_overrides=((".title", ".headline"),))
        assert result.records[0].get("title") == "Profitable SaaS business"

    @pytest.mark.asyncio
    async def test_semantic_falls_back_to_page_money(self, extractor):
        snapshot = _snapshot(VisibleElement(tag="p", text="Asking 50000 USD for the store"))
        assert (await extractor.extract(snapshot)).records == ()

        result = await extractor.extract(snapshot, parsing_strategy="semantic")
        assert result.records[0].get("price") == 50000.0
        assert result.semantic.entities.money == ("50000 USD",)
        assert result.parsing_strategy == "semantic"

    @pytest.mark.asyncio
    async def test_pattern_walks_repeated_cards(self, extractor):
        rows = "".join(
            f'<div class="row">Price: ${n}00,000 Revenue: ${n * 5},000/mo</div>' for n in range(1, 5)
        )
        snapshot = _snapshot(html=f"<html><body>{rows}</body></html>")
        assert (await extractor.extract(snapshot)).elements_processed == 0

        result = await extractor.extract(snapshot, parsing_strategy="pattern")
        assert result.elements_processed == 4
        assert len(result.records) == 4

    @pytest.mark.asyncio
    async def test_flexible_skips_validation(self, extractor):
        snapshot = _snapshot(VisibleElement(tag="h1", text="Shop"))
        assert (await extractor.extract(snapshot)).records == ()

        result = await extractor.extract(snapshot, parsing_strategy="flexible")
        assert result.records[0].get("title") == "Shop"


class TestMetricsExtraction:
    @pytest.mark.asyncio
    async def test_key_value_metric(self, extractor):
        snapshot = _snapshot(VisibleElement(tag="div", text="Conversion rate: 3.4%", classes=("metric",)))
        result = await extractor.extract(snapshot, "metrics")
        assert result.records[0].get("kpi") == {"label": "Conversion rate", "value": "3.4%"}
        assert result.records[0].quality == pytest.approx(1.0)
        assert result.confidence.overall == pytest.approx(1.0)


class TestFieldRules:
    def test_labelled_figure_is_not_taken_as_price(self):
        values = IntelligentExtractor.extract_fields("Revenue: $5,000", LISTING_SCHEMA)
        assert values == {"revenue": 5000.0}

    def test_element_class_takes_whole_text(self):
        element = VisibleElement(tag="span", text="$75,000", classes=("listing-price",))
        values = IntelligentExtractor.extract_fields(element.text, LISTING_SCHEMA, element)
        assert values == {"price": 75000.0}

    def test_traffic_count(self):
        values = IntelligentExtractor.extract_fields("12,500 visitors per month", LISTING_SCHEMA)
        assert values == {"traffic": 12500}

    @pytest.mark.parametrize(
        ("selector", "expected"),
        [
            (".price", True),
            ('[class*="pri"]', True),
            ("[data-id]", True),
            ("span", True),
            ("div", False),
            (".revenue", False),
        ],
    )
    def test_matches_selector(self, selector, expected):
        element = VisibleElement(
            tag="span", text="x", classes=("card-price",), attributes={"data-id": "1"}
        )
        assert matches_selector(element, selector) is expected


class TestStats:
    @pytest.mark.asyncio
    async def test_counters(self):
        extractor = IntelligentExtractor(sleep=SleepRecorder(), rng=random.Random(2))
        await extractor.extract(listing_snapshot())
        await extractor.extract(listing_snapshot(texts=("Price: $1,000,000 Revenue: $1,000/mo",)))
        stats = extractor.get_stats()
        assert stats["extractions"] == 2
        assert stats["records_extracted"] == 1
        assert stats["records_discarded"] == 1
        assert stats["elements_processed"] == 2
        assert stats["last_confidence"] == 0.0
        assert stats["patterns_used"] == {"Z-pattern": 2}
