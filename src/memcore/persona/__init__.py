"""User personas learned from conversations."""

from __future__ import annotations

from memcore.persona.composer import ComposedEmail, EmailRequest, compose_email
from memcore.persona.models import (
    CommunicationStyle,
    InfoFormat,
    KeyPerson,
    PersonaFact,
    ProfessionalProfile,
    UserPersona,
    persona_key,
)
from memcore.persona.questions import PROBING_QUESTIONS, ProbingQuestion, QuestionCategory
from memcore.persona.service import PersonaService, calculate_confidence
from memcore.persona.store import InMemoryPersonaStore, PersonaStore

__all__ = [
    "PROBING_QUESTIONS",
    "CommunicationStyle",
    "ComposedEmail",
    "EmailRequest",
    "InMemoryPersonaStore",
    "InfoFormat",
    "KeyPerson",
    "PersonaFact",
    "PersonaService",
    "PersonaStore",
    "ProbingQuestion",
    "ProfessionalProfile",
    "QuestionCategory",
    "UserPersona",
    "calculate_confidence",
    "compose_email",
    "persona_key",
]
