"""Extraction of memories, entities and persona insights from conversation text."""

from __future__ import annotations

from memcore.extraction.entities import Entity, EntityExtractor, EntityType
from memcore.extraction.facts import Fact, FactExtractor
from memcore.extraction.insights import Insight, InsightCategory, InsightExtractor, InsightField
from memcore.extraction.pipeline import (
    ExtractionPipeline,
    ExtractionResult,
    Extractor,
    MemoryCandidateDraft,
    PatternExtractor,
)
from memcore.extraction.preferences import (
    Preference,
    PreferenceCategory,
    PreferenceDetector,
    PreferenceStrength,
    merge_preferences,
)
from memcore.extraction.style import (
    SignaturePatterns,
    WritingStyle,
    analyze_writing_style,
    extract_signature_patterns,
    style_insights,
)

__all__ = [
    "Entity",
    "EntityExtractor",
    "EntityType",
    "ExtractionPipeline",
    "ExtractionResult",
    "Extractor",
    "Fact",
    "FactExtractor",
    "Insight",
    "InsightCategory",
    "InsightExtractor",
    "InsightField",
    "MemoryCandidateDraft",
    "PatternExtractor",
    "Preference",
    "PreferenceCategory",
    "PreferenceDetector",
    "PreferenceStrength",
    "SignaturePatterns",
    "WritingStyle",
    "analyze_writing_style",
    "extract_signature_patterns",
    "merge_preferences",
    "style_insights",
]
