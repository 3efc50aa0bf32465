"""Tests for writing-style analysis."""

from __future__ import annotations

import pytest

from memcore.extraction.insights import InsightField
from memcore.extraction.style import (
    SignaturePatterns,
    WritingStyle,
    analyze_writing_style,
    extract_signature_patterns,
    score_message,
    style_insights,
)


class TestScoreMessage:
    """Tests for per-message scores."""

    def test_formal_vs_casual(self) -> None:
        """Test formal markers raise formality, casual markers lower it."""
        formal = score_message("Dear Ola, I am writing regarding the report. Kindly review it.")
        casual = score_message("hey yeah that is cool lol")

        assert formal.formality == pytest.approx(0.7)
        assert casual.formality == pytest.approx(0.1)

    def test_directness(self) -> None:
        """Test directive words against hedges."""
        assert score_message("You must fix this today.").directness == 0.7
        assert score_message("Maybe we could look at it.").directness == 0.3
        assert score_message("The sky is blue.").directness == 0.5

    def test_technicality(self) -> None:
        """Test each technical vocabulary group adds to the score."""
        style = score_message("The API returns JSON from the backend database.")
        assert style.technicality == pytest.approx(0.4)

    def test_emotionality(self) -> None:
        """Test exclamations and emotional words."""
        assert score_message("I love it!").emotionality == pytest.approx(0.3)
        assert score_message("Noted.").emotionality == 0.0

    def test_language(self) -> None:
        """Test language detection per message."""
        assert score_message("Jeg har ikke tid i dag").language == "no"
        assert score_message("I have the files with me").language == "en"


class TestAnalyzeWritingStyle:
    """Tests for averaging over messages."""

    def test_no_messages(self) -> None:
        """Test empty input gives the neutral default."""
        assert analyze_writing_style([]) == WritingStyle()
        assert analyze_writing_style(["", "  "]).sample_size == 0

    def test_average(self) -> None:
        """Test scores are averaged over non-empty messages."""
        style = analyze_writing_style(["You must fix this.", "Maybe later.", ""])
        assert style.sample_size == 2
        assert style.directness == pytest.approx(0.5)


class TestSignaturePatterns:
    """Tests for greeting and signoff detection."""

    def test_english(self) -> None:
        """Test greetings at the start and signoffs at the end."""
        patterns = extract_signature_patterns([
            "Hi Ola,\nCan you send the file?\nThanks!",
            "Hi Kari, see below.\nThanks!",
        ])
        assert patterns.greetings == ["Hi"]
        assert patterns.signoffs == ["Thanks!"]

    def test_norwegian(self) -> None:
        """Test Norwegian greetings and signoffs."""
        patterns = extract_signature_patterns(["Hei!\nKan du sende filen?\nMvh"])
        assert patterns.greetings == ["Hei!"]
        assert patterns.signoffs == ["Mvh"]

    def test_none(self) -> None:
        """Test plain messages have no signature."""
        assert extract_signature_patterns(["Send the file"]) == SignaturePatterns()


class TestStyleInsights:
    """Tests for converting style into insights."""

    def test_no_samples(self) -> None:
        """Test an unmeasured style yields nothing."""
        assert style_insights(WritingStyle()) == []

    def test_confidence_grows_with_samples(self) -> None:
        """Test confidence depends on the sample size, capped at 0.9."""
        few = style_insights(WritingStyle(sample_size=3))
        many = style_insights(WritingStyle(sample_size=20))
        assert few[0].confidence == pytest.approx(0.65)
        assert many[0].confidence == pytest.approx(0.9)

    def test_fields(self) -> None:
        """Test measured dimensions, language and signatures become insights."""
        style = WritingStyle(formality=0.8, language="en", sample_size=4)
        signatures = SignaturePatterns(greetings=["Hi"], signoffs=["Thanks!"])

        insights = style_insights(style, signatures)
        fields = [i.field for i in insights]

        assert fields.count(InsightField.STYLE_LANGUAGE) == 1
        assert InsightField.STYLE_GREETING in fields
        assert InsightField.STYLE_SIGNOFF in fields
        formality = next(i for i in insights if i.field == InsightField.STYLE_FORMALITY)
        assert formality.value == 0.8

    def test_unknown_language_omitted(self) -> None:
        """Test an undetected language is not reported."""
        insights = style_insights(WritingStyle(sample_size=2))
        assert InsightField.STYLE_LANGUAGE not in [i.field for i in insights]
