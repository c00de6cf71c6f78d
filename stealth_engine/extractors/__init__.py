"""Page extraction: schemas, reading patterns and the intelligent extractor."""

from stealth_engine.extractors.extractor import (
    ExtractedRecord,
    ExtractionConfidence,
    ExtractionResult,
    IntelligentExtractor,
)
from stealth_engine.extractors.schemas import (
    ExtractionSchema,
    FieldRule,
    Relationship,
    SchemaRegistry,
    default_registry,
)

__all__ = [
    "ExtractedRecord",
    "ExtractionConfidence",
    "ExtractionResult",
    "ExtractionSchema",
    "FieldRule",
    "IntelligentExtractor",
    "Relationship",
    "SchemaRegistry",
    "default_registry",
]
