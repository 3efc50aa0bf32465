"""Tests for persona models, store, service, questions and email composition."""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock, patch

import pytest

from memcore.config import PersonaConfig
from memcore.errors import ConcurrencyError, PersonaNotFoundError
from memcore.extraction.insights import Insight, InsightCategory, InsightField
from memcore.persona.composer import LOW_CONFIDENCE_NOTE, EmailRequest, compose_email, generate_subject
from memcore.persona.models import (
    InfoFormat,
    KeyPerson,
    PersonaFact,
    UserPersona,
)
from memcore.persona.questions import QuestionCategory, is_field_empty, questions_by_category
from memcore.persona.service import INSIGHT_HANDLERS, PersonaService, calculate_confidence
from memcore.persona.store import InMemoryPersonaStore


def insight(
    field: InsightField,
    value: str | float,
    confidence: float = 0.9,
    category: InsightCategory = InsightCategory.PROFESSIONAL,
    **metadata,
) -> Insight:
    return Insight(category=category, field=field, value=value, confidence=confidence, metadata=metadata)


VISMA_INSIGHTS = [
    insight(InsightField.PROFESSIONAL_TITLE, "backend engineer"),
    insight(InsightField.PROFESSIONAL_COMPANY, "Visma"),
]


class TestPersonaModels:
    """Tests for the persona data model."""

    def test_round_trip(self) -> None:
        """Test a populated persona survives to_dict/from_dict."""
        persona = UserPersona(user_id="user-1", tenant_id="tenant-a", chatbot_id="bot")
        persona.professional_profile.title = "CTO"
        persona.preferences.info_format = InfoFormat.BULLET_POINTS
        persona.relationships.key_people.append(KeyPerson(name="Kari", role="boss"))
        persona.facts["general"] = [PersonaFact(content="Has two kids", confidence=0.7)]

        restored = UserPersona.from_dict(persona.to_dict())

        assert restored.to_dict() == persona.to_dict()
        assert restored.preferences.info_format is InfoFormat.BULLET_POINTS
        assert restored.relationships.find_person("kari").role == "boss"

    def test_key_and_counts(self) -> None:
        """Test the scope key and derived counts."""
        persona = UserPersona(user_id="user-1", tenant_id="tenant-a")
        persona.facts = {"a": [PersonaFact("x", 0.5)], "b": [PersonaFact("y", 0.5), PersonaFact("z", 0.5)]}
        persona.professional_profile.company = "Visma"

        assert persona.key == "tenant-a:user-1:global"
        assert persona.fact_count == 3
        assert persona.professional_profile.filled_fields() == 1


class TestPersonaStore:
    """Tests for InMemoryPersonaStore."""

    @pytest.mark.asyncio
    async def test_create_only_once(self) -> None:
        """Test expected_version=0 means "must not exist yet"."""
        store = InMemoryPersonaStore()
        persona = UserPersona(user_id="user-1", tenant_id="tenant-a")

        await store.save(persona, expected_version=0)
        with pytest.raises(ConcurrencyError):
            await store.save(UserPersona(user_id="user-1", tenant_id="tenant-a"), expected_version=0)

    @pytest.mark.asyncio
    async def test_returns_copies(self) -> None:
        """Test callers cannot mutate stored state."""
        store = InMemoryPersonaStore()
        persona = await store.save(UserPersona(user_id="user-1", tenant_id="tenant-a"))

        fetched = await store.get("user-1", "tenant-a")
        fetched.professional_profile.title = "changed"

        assert (await store.get_by_id(persona.id)).professional_profile.title is None

    @pytest.mark.asyncio
    async def test_list_and_delete(self) -> None:
        """Test tenant listing and deletion."""
        store = InMemoryPersonaStore()
        mine = await store.save(UserPersona(user_id="user-1", tenant_id="tenant-a"))
        await store.save(UserPersona(user_id="user-1", tenant_id="tenant-b"))

        assert [p.id for p in await store.list_by_tenant("tenant-a")] == [mine.id]

        await store.delete(mine.id)
        assert await store.get_by_id(mine.id) is None
        assert len(store) == 1


class TestPersonaService:
    """Tests for learning personas from insights."""

    @pytest.mark.asyncio
    async def test_get_or_create(self, persona_service: PersonaService) -> None:
        """Test a persona is created once at version 1."""
        first = await persona_service.get_or_create_persona("user-1", "tenant-a")
        second = await persona_service.get_or_create_persona("user-1", "tenant-a")

        assert first.id == second.id
        assert first.version == 1
        assert first.communication_style.preferred_language == "no"

    @pytest.mark.asyncio
    async def test_concurrent_create(self, persona_service: PersonaService) -> None:
        """Test racing creations converge on one persona."""
        personas = await asyncio.gather(
            *(persona_service.get_or_create_persona("user-1", "tenant-a") for _ in range(5))
        )
        assert len({p.id for p in personas}) == 1
        assert len(persona_service.store) == 1

    @pytest.mark.asyncio
    async def test_update_from_insights(self, persona_service: PersonaService) -> None:
        """Test professional insights fill the profile and persona facts."""
        persona = await persona_service.get_or_create_persona("user-1", "tenant-a")

        updated = await persona_service.update_from_insights(persona.id, VISMA_INSIGHTS)

        assert updated.professional_profile.title == "backend engineer"
        assert updated.professional_profile.company == "Visma"
        assert updated.version == 2
        assert updated.conversations_analyzed == 1
        assert [f.content for f in updated.facts["professional"]] == ["title: backend engineer", "company: Visma"]
        # (1/5 conversations + 2/10 facts + 2/4 profile) / 3
        assert updated.overall_confidence == pytest.approx(0.3)

    @pytest.mark.asyncio
    async def test_unknown_persona(self, persona_service: PersonaService) -> None:
        """Test updating a missing persona raises PersonaNotFoundError."""
        with pytest.raises(PersonaNotFoundError):
            await persona_service.update_from_insights("missing", VISMA_INSIGHTS)

    @pytest.mark.asyncio
    async def test_concurrent_updates_not_lost(self, persona_service: PersonaService) -> None:
        """Test concurrent turns for the same persona all land."""
        persona = await persona_service.get_or_create_persona("user-1", "tenant-a")
        goals = [
            insight(InsightField.PROFESSIONAL_GOAL, f"goal {i}", category=InsightCategory.GOAL)
            for i in range(5)
        ]

        await asyncio.gather(*(persona_service.update_from_insights(persona.id, [g]) for g in goals))
        final = await persona_service.get_persona(persona.id)

        assert final.conversations_analyzed == 5
        assert final.version == 6
        assert sorted(final.professional_profile.goals) == [f"goal {i}" for i in range(5)]

    @pytest.mark.asyncio
    async def test_conflict_retried(self) -> None:
        """Test a version conflict re-reads and retries."""
        store = InMemoryPersonaStore()
        service = PersonaService(store)
        persona = await service.get_or_create_persona("user-1", "tenant-a")
        original_save = store.save
        calls: list[int | None] = []

        async def flaky_save(p: UserPersona, expected_version: int | None = None) -> UserPersona:
            calls.append(expected_version)
            if len(calls) == 1:
                raise ConcurrencyError(p.key, expected_version, expected_version + 1)
            return await original_save(p, expected_version)

        with patch.object(store, "save", side_effect=flaky_save):
            updated = await service.update_from_insights(persona.id, VISMA_INSIGHTS)

        assert calls == [1, 1]
        assert updated.conversations_analyzed == 1

    @pytest.mark.asyncio
    async def test_conflict_gives_up(self) -> None:
        """Test persistent conflicts surface after the configured retries."""
        store = InMemoryPersonaStore()
        service = PersonaService(store, PersonaConfig(max_update_retries=3))
        persona = await service.get_or_create_persona("user-1", "tenant-a")

        with patch.object(store, "save", side_effect=ConcurrencyError("k", 1, 2)) as save:
            with pytest.raises(ConcurrencyError):
                await service.update_from_insights(persona.id, VISMA_INSIGHTS)

        assert save.await_count == 3

    @pytest.mark.asyncio
    async def test_style_updates(self, persona_service: PersonaService) -> None:
        """Test measured values blend in and explicit requests nudge."""
        persona = await persona_service.get_or_create_persona("user-1", "tenant-a")
        style = InsightCategory.STYLE

        updated = await persona_service.update_from_insights(persona.id, [
            insight(InsightField.STYLE_FORMALITY, "formal", 0.9, style),
            insight(InsightField.STYLE_TECHNICALITY, 1.0, 0.65, style),
            insight(InsightField.STYLE_VERBOSITY, "brief", 0.85, style),
        ])

        assert updated.communication_style.formality == pytest.approx(0.65)
        assert updated.communication_style.technicality == pytest.approx(0.65)
        assert updated.communication_style.verbosity == pytest.approx(0.35)

    @pytest.mark.asyncio
    async def test_people_and_format(self, persona_service: PersonaService) -> None:
        """Test key people are deduplicated and info format is set."""
        persona = await persona_service.get_or_create_persona("user-1", "tenant-a")
        rel = InsightCategory.RELATIONSHIP

        updated = await persona_service.update_from_insights(persona.id, [
            insight(InsightField.RELATIONSHIP_PERSON, "Kari", 0.7, rel, role="boss"),
            insight(InsightField.RELATIONSHIP_PERSON, "kari", 0.7, rel),
            insight(InsightField.PREFERENCE_INFO_FORMAT, "bullet_points", 0.85, InsightCategory.STYLE),
            insight(InsightField.PROFESSIONAL_TEAM_SIZE, 8.0),
        ])

        assert [(p.name, p.role) for p in updated.relationships.key_people] == [("Kari", "boss")]
        assert updated.preferences.info_format == InfoFormat.BULLET_POINTS
        assert updated.professional_profile.team_size == 8

    @pytest.mark.asyncio
    async def test_bad_insight_skipped(self, persona_service: PersonaService) -> None:
        """Test an insight with an invalid value is skipped, the rest applied."""
        persona = await persona_service.get_or_create_persona("user-1", "tenant-a")

        updated = await persona_service.update_from_insights(persona.id, [
            insight(InsightField.PREFERENCE_INFO_FORMAT, "tables", category=InsightCategory.PREFERENCE),
            insight(InsightField.PROFESSIONAL_COMPANY, "Visma"),
        ])

        assert updated.preferences.info_format == InfoFormat.MIXED
        assert updated.professional_profile.company == "Visma"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [KeyError("role"), AttributeError("no such section")])
    async def test_failing_handler_skipped(self, persona_service: PersonaService, error: Exception) -> None:
        """Test a handler raising any error skips that insight and keeps the others."""
        persona = await persona_service.get_or_create_persona("user-1", "tenant-a")
        failing = MagicMock(side_effect=error)

        with patch.dict(INSIGHT_HANDLERS, {InsightField.PROFESSIONAL_TITLE: failing}):
            updated = await persona_service.update_from_insights(persona.id, VISMA_INSIGHTS)

        failing.assert_called_once()
        assert updated.professional_profile.title is None
        assert updated.professional_profile.company == "Visma"
        assert updated.version == persona.version + 1

    @pytest.mark.asyncio
    async def test_general_fact(self, persona_service: PersonaService) -> None:
        """Test general facts are categorised and deduplicated."""
        persona = await persona_service.get_or_create_persona("user-1", "tenant-a")
        fact = insight(InsightField.GENERAL_FACT, "User: two kids", 0.7, InsightCategory.FACT)

        await persona_service.update_from_insights(persona.id, [fact])
        updated = await persona_service.update_from_insights(persona.id, [fact])

        assert [f.content for f in updated.facts["general"]] == ["User: two kids"]

    def test_calculate_confidence_capped(self) -> None:
        """Test confidence never exceeds 1."""
        persona = UserPersona(user_id="u", tenant_id="t", conversations_analyzed=50)
        persona.facts = {"general": [PersonaFact(str(i), 0.5) for i in range(20)]}
        profile = persona.professional_profile
        profile.title, profile.company, profile.industry, profile.goals = "CTO", "Visma", "software", ["grow"]

        assert calculate_confidence(persona) == pytest.approx(1.0)


class TestProbingQuestions:
    """Tests for probing question selection."""

    def test_fresh_persona_asks_role(self, persona_service: PersonaService) -> None:
        """Test an empty persona is asked about its role first."""
        persona = UserPersona(user_id="u", tenant_id="t")
        question = persona_service.get_next_probing_question(persona)

        assert question.id == "prof-1"
        assert persona_service.question_text(question, persona) == "Hva er din rolle i bedriften?"
        assert persona_service.question_text(question, persona, "en") == "What's your role at your company?"

    def test_asked_questions_skipped(self, persona_service: PersonaService) -> None:
        """Test already asked questions are not repeated."""
        persona = UserPersona(user_id="u", tenant_id="t")
        question = persona_service.get_next_probing_question(persona, asked_ids=["prof-1"])
        assert question.id == "goals-2"

    def test_partially_filled_still_asked(self, persona_service: PersonaService) -> None:
        """Test a question with one empty target is still a candidate."""
        persona = UserPersona(user_id="u", tenant_id="t")
        persona.professional_profile.title = "CTO"
        assert persona_service.get_next_probing_question(persona).id == "prof-1"

    def test_filled_targets_skipped(self, persona_service: PersonaService) -> None:
        """Test a question whose targets are all known is never asked."""
        persona = UserPersona(user_id="u", tenant_id="t")
        persona.professional_profile.title = "CTO"
        persona.professional_profile.company = "Visma"
        assert persona_service.get_next_probing_question(persona).id != "prof-1"

    def test_nothing_left_to_ask(self, persona_service: PersonaService) -> None:
        """Test a complete persona gets no question."""
        persona = UserPersona(user_id="u", tenant_id="t")
        profile = persona.professional_profile
        profile.title, profile.company, profile.industry = "CTO", "Visma", "software"
        profile.goals, profile.challenges = ["grow"], ["hiring"]
        persona.preferences.interests = ["jazz"]
        persona.preferences.preferred_contact_time = "mornings"
        persona.preferences.info_format = InfoFormat.BULLET_POINTS
        persona.communication_style.formality = 0.8
        persona.communication_style.verbosity = 0.3
        persona.relationships.key_people = [KeyPerson(name="Kari")]

        assert persona_service.get_next_probing_question(persona) is None

    def test_disabled(self) -> None:
        """Test questions can be switched off."""
        service = PersonaService(config=PersonaConfig(auto_ask_questions=False))
        assert service.get_next_probing_question(UserPersona(user_id="u", tenant_id="t")) is None

    def test_unknown_field(self) -> None:
        """Test an unknown target field is a programming error."""
        with pytest.raises(KeyError):
            is_field_empty(UserPersona(user_id="u", tenant_id="t"), "style.colour")

    def test_questions_by_category(self) -> None:
        """Test questions can be listed per category in definition order."""
        assert [q.id for q in questions_by_category(QuestionCategory.PROFESSIONAL)] == ["prof-1", "prof-2", "prof-3"]
        assert [q.id for q in questions_by_category(QuestionCategory.GOALS)] == ["goals-1", "goals-2"]


class TestEmailComposer:
    """Tests for drafting emails in the user's style."""

    def test_default_persona(self) -> None:
        """Test a new Norwegian persona gets a casual, low-confidence draft."""
        persona = UserPersona(user_id="u", tenant_id="t")
        request = EmailRequest(recipient="Kari", purpose="Follow up on the proposal", key_points=["Budget", "Timeline"])

        email = compose_email(persona, request)

        assert email.subject == "Follow up on the proposal"
        assert email.body == (
            "Hei Kari!\n\n"
            "Bare en rask oppfølging på det vi snakket om.\n\n"
            "Budget\n\nTimeline\n\n"
            "Gi meg beskjed hvis du har spørsmål!\n\n"
            "Beste hilsen,"
        )
        assert email.notes == LOW_CONFIDENCE_NOTE
        assert email.style_match_score == pytest.approx(0.5)

    def test_learned_signature(self) -> None:
        """Test learned greetings and signoffs are reused."""
        persona = UserPersona(user_id="u", tenant_id="t", overall_confidence=0.8, conversations_analyzed=10)
        style = persona.communication_style
        style.preferred_language, style.formality = "en", 0.8
        style.greetings, style.signoffs = ["Hi"], ["Cheers!"]

        email = compose_email(persona, EmailRequest(recipient="Ola", purpose="Schedule a meeting"))

        assert email.body.startswith("Hi Ola,\n\nI am writing to schedule a meeting.")
        assert email.body.endswith("Cheers!")
        assert email.notes is None
        assert email.style_match_score == pytest.approx(1.0)

    def test_detailed_uses_bullets(self) -> None:
        """Test verbose users get bulleted key points."""
        persona = UserPersona(user_id="u", tenant_id="t")
        persona.communication_style.verbosity = 0.8
        request = EmailRequest(recipient="Ola", purpose="Status", key_points=["a", "b", "c"])

        assert "• a\n• b\n• c" in compose_email(persona, request).body

    def test_tone_override(self, persona_service: PersonaService) -> None:
        """Test an explicit tone wins over the learned style."""
        persona = UserPersona(user_id="u", tenant_id="t")
        persona.communication_style.preferred_language = "en"
        email = persona_service.compose_email(
            persona, EmailRequest(recipient="Ola", purpose="Status", tone_override="formal")
        )
        assert email.body.startswith("Dear Ola,")
        assert email.body.endswith("Best regards,")

    def test_generate_subject(self) -> None:
        """Test filler prefixes and trailing periods are stripped."""
        assert generate_subject("please send the report.") == "Send the report"
