"""Tests for PreferenceDetector and merge_preferences."""

from __future__ import annotations

import pytest

from memcore.extraction.preferences import (
    Polarity,
    PreferenceCategory,
    PreferenceDetector,
    PreferenceStrength,
    merge_preferences,
)


@pytest.fixture
def detector() -> PreferenceDetector:
    """Create a detector with default settings."""
    return PreferenceDetector()


class TestDetection:
    """Tests for detect_preferences."""

    def test_empty_text(self, detector: PreferenceDetector) -> None:
        """Test blank input."""
        assert detector.detect_preferences("") == []

    def test_moderate_preference(self, detector: PreferenceDetector) -> None:
        """Test a plain stated preference."""
        [pref] = detector.detect_preferences("I prefer email.")

        assert pref.category == PreferenceCategory.COMMUNICATION
        assert pref.value == "email"
        assert pref.strength == PreferenceStrength.MODERATE
        assert pref.confidence == 0.7
        assert pref.statement == "User prefers email (communication)"

    def test_intensifier_upgrades_strength(self, detector: PreferenceDetector) -> None:
        """Test "really" raises the strength one level."""
        [pref] = detector.detect_preferences("I really prefer email.")
        assert pref.strength == PreferenceStrength.STRONG
        assert pref.confidence == 0.9

    def test_intensifier_only_in_same_sentence(self, detector: PreferenceDetector) -> None:
        """Test an intensifier in another sentence does not count."""
        [pref] = detector.detect_preferences("I really had a long day. I prefer email.")
        assert pref.strength == PreferenceStrength.MODERATE

    def test_negative_preference(self, detector: PreferenceDetector) -> None:
        """Test avoidance rules carry negative polarity."""
        [pref] = detector.detect_preferences("I'm not available in the mornings.")

        assert pref.polarity == Polarity.NEGATIVE
        assert pref.category == PreferenceCategory.SCHEDULING
        assert pref.statement == "User avoids morning meetings (scheduling)"

    def test_language_preference(self, detector: PreferenceDetector) -> None:
        """Test explicit language requests are strong."""
        [pref] = detector.detect_preferences("Please answer in Norwegian")
        assert pref.value == "norwegian"
        assert pref.strength == PreferenceStrength.STRONG

    def test_several_categories(self, detector: PreferenceDetector) -> None:
        """Test one text can express preferences in several categories."""
        prefs = detector.detect_preferences("Keep it brief. I prefer bullet points.")
        values = {p.value for p in prefs}
        assert {"concise", "bullet_points"} <= values

    def test_min_confidence(self) -> None:
        """Test weak preferences fall below a raised threshold."""
        assert len(PreferenceDetector().detect_preferences("Send me the report")) == 1
        assert PreferenceDetector(min_confidence=0.6).detect_preferences("Send me the report") == []

    def test_category_filter(self) -> None:
        """Test only the chosen categories are checked."""
        detector = PreferenceDetector(categories=[PreferenceCategory.FORMAT])
        prefs = detector.detect_preferences("I prefer email. I prefer bullet points.")
        assert [p.value for p in prefs] == ["bullet_points"]


class TestMerging:
    """Tests for merging preferences across messages."""

    def test_repeated_moderate_becomes_strong(self, detector: PreferenceDetector) -> None:
        """Test two sightings upgrade moderate to strong."""
        messages = [
            {"role": "user", "content": "I prefer bullet points."},
            {"role": "assistant", "content": "I prefer bullet points."},
            {"role": "user", "content": "Again, I prefer bullet points."},
        ]
        [pref] = detector.detect_from_conversation(messages)

        assert pref.strength == PreferenceStrength.STRONG
        assert pref.confidence == pytest.approx(0.75)

    def test_weak_needs_three_sightings(self, detector: PreferenceDetector) -> None:
        """Test weak preferences upgrade only after three sightings."""
        twice = [detector.detect_preferences("Send me the report")] * 2
        thrice = [detector.detect_preferences("Send me the report")] * 3

        [two] = merge_preferences(twice)
        [three] = merge_preferences(thrice)

        assert two.strength == PreferenceStrength.WEAK
        assert two.confidence == pytest.approx(0.55)
        assert three.strength == PreferenceStrength.MODERATE
        assert three.confidence == pytest.approx(0.6)

    def test_single_sighting_unchanged(self, detector: PreferenceDetector) -> None:
        """Test a preference seen once passes through."""
        [pref] = merge_preferences([detector.detect_preferences("I prefer email.")])
        assert pref.confidence == 0.7
