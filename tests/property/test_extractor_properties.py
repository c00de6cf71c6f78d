"""Property tests for the intelligent extractor.

Validates that quality and confidence stay within [0, 1], that records are
de-duplicated and ordered, and that reading pauses follow the chunking.
"""

from __future__ import annotations

import asyncio
import json
import math
import random

from hypothesis import given, settings
from hypothesis import strategies as st

from stealth_engine.extractors.extractor import IntelligentExtractor
from tests.conftest import SleepRecorder, listing_snapshot, listing_texts


def _run_async(coro):
    """Run an async coroutine synchronously."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _extract(texts: list[str], chunk_size: int = 10, seed: int = 13):
    sleep = SleepRecorder()
    extractor = IntelligentExtractor(chunk_size=chunk_size, sleep=sleep, rng=random.Random(seed))
    result = _run_async(extractor.extract(listing_snapshot(texts=tuple(texts))))
    return result, sleep, extractor


# ---------------------------------------------------------------------------
# Property 16: Quality and confidence are bounded
# ---------------------------------------------------------------------------


@settings(max_examples=100, deadline=None)
@given(texts=listing_texts)
def test_quality_and_confidence_bounded(texts: list[str]) -> None:
    # Feature: stealth-collection-engine, Property 16: Quality and confidence bounds
    result, _, _ = _extract(texts)

    for record in result.records:
        assert 0.0 <= record.quality <= 1.0
    confidence = result.confidence
    for score in (
        confidence.overall,
        confidence.field_coverage,
        confidence.data_consistency,
        confidence.pattern_match,
    ):
        assert 0.0 <= score <= 1.0
    assert confidence.item_count == len(result.records)
    assert 0.0 <= result.data_quality <= 1.0

    if not result.records:
        assert confidence.overall == 0.0


# ---------------------------------------------------------------------------
# Property 17: Records are unique and ordered by quality and position
# ---------------------------------------------------------------------------


@settings(max_examples=100, deadline=None)
@given(texts=listing_texts)
def test_records_unique_and_ordered(texts: list[str]) -> None:
    # Feature: stealth-collection-engine, Property 17: Record de-duplication and ordering
    result, _, _ = _extract(texts)

    keys = [json.dumps(dict(r.fields), sort_keys=True, default=str) for r in result.records]
    assert len(keys) == len(set(keys))

    scores = [r.quality * 0.7 + (1 - r.y / 1000) * 0.3 for r in result.records]
    assert scores == sorted(scores, reverse=True)

    assert len(result.records) + result.discarded <= result.elements_processed


# ---------------------------------------------------------------------------
# Property 18: Reading pauses follow the chunking
# ---------------------------------------------------------------------------


@settings(max_examples=100, deadline=None)
@given(texts=listing_texts, chunk_size=st.integers(min_value=1, max_value=6))
def test_one_pause_per_chunk(texts: list[str], chunk_size: int) -> None:
    # Feature: stealth-collection-engine, Property 18: Chunked reading pauses
    result, sleep, extractor = _extract(texts, chunk_size=chunk_size)

    visible = sum(1 for text in texts if text.strip())
    assert result.elements_processed == visible
    assert len(sleep.calls) == math.ceil(visible / chunk_size)
    assert len(result.chunk_delays_ms) == len(sleep.calls)
    for delay in result.chunk_delays_ms:
        assert extractor.min_chunk_delay_ms <= delay <= extractor.max_chunk_delay_ms

    for record in result.records:
        assert 0 <= record.chunk_index < max(1, len(sleep.calls))
