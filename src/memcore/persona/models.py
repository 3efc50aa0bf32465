"""Persona data model.

A persona is the structured profile learned about one user, optionally
per chatbot. Memories answer "what did the user say"; the persona
answers "who is the user and how do they like to communicate".
"""

from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Self

from memcore.models import dt_from_str, dt_to_str, utcnow


class InfoFormat(str, Enum):
    BULLET_POINTS = "bullet_points"
    PARAGRAPHS = "paragraphs"
    MIXED = "mixed"


class Urgency(str, Enum):
    IMMEDIATE = "immediate"
    SAME_DAY = "same_day"
    FLEXIBLE = "flexible"


def persona_key(user_id: str, tenant_id: str, chatbot_id: str | None = None) -> str:
    """Storage key, ``tenant:user:chatbot`` with "global" for no chatbot."""
    return f"{tenant_id}:{user_id}:{chatbot_id or 'global'}"


@dataclass
class CommunicationStyle:
    formality: float = 0.5
    verbosity: float = 0.5
    directness: float = 0.5
    emotionality: float = 0.5
    technicality: float = 0.5
    preferred_language: str = "no"
    greetings: list[str] = field(default_factory=list)
    signoffs: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "formality": self.formality,
            "verbosity": self.verbosity,
            "directness": self.directness,
            "emotionality": self.emotionality,
            "technicality": self.technicality,
            "preferred_language": self.preferred_language,
            "greetings": list(self.greetings),
            "signoffs": list(self.signoffs),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Self:
        return cls(**(data or {}))


@dataclass
class ProfessionalProfile:
    title: str | None = None
    company: str | None = None
    industry: str | None = None
    team_size: int | None = None
    responsibilities: list[str] = field(default_factory=list)
    goals: list[str] = field(default_factory=list)
    challenges: list[str] = field(default_factory=list)

    def filled_fields(self) -> int:
        """Count of the four fields that drive persona confidence."""
        return sum(bool(v) for v in (self.title, self.company, self.industry, self.goals))

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "company": self.company,
            "industry": self.industry,
            "team_size": self.team_size,
            "responsibilities": list(self.responsibilities),
            "goals": list(self.goals),
            "challenges": list(self.challenges),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Self:
        return cls(**(data or {}))


@dataclass
class PersonalPreferences:
    interests: list[str] = field(default_factory=list)
    avoid_topics: list[str] = field(default_factory=list)
    info_format: InfoFormat = InfoFormat.MIXED
    urgency: Urgency = Urgency.FLEXIBLE
    preferred_contact_time: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "interests": list(self.interests),
            "avoid_topics": list(self.avoid_topics),
            "info_format": self.info_format.value,
            "urgency": self.urgency.value,
            "preferred_contact_time": self.preferred_contact_time,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Self:
        data = dict(data or {})
        if "info_format" in data:
            data["info_format"] = InfoFormat(data["info_format"])
        if "urgency" in data:
            data["urgency"] = Urgency(data["urgency"])
        return cls(**data)


@dataclass
class KeyPerson:
    name: str
    role: str | None = None
    relationship: str = "contact"
    notes: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "role": self.role, "relationship": self.relationship, "notes": self.notes}


@dataclass
class ImportantDate:
    label: str
    date: str

    def to_dict(self) -> dict[str, Any]:
        return {"label": self.label, "date": self.date}


@dataclass
class Relationships:
    key_people: list[KeyPerson] = field(default_factory=list)
    important_dates: list[ImportantDate] = field(default_factory=list)

    def find_person(self, name: str) -> KeyPerson | None:
        wanted = name.strip().lower()
        return next((p for p in self.key_people if p.name.strip().lower() == wanted), None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "key_people": [p.to_dict() for p in self.key_people],
            "important_dates": [d.to_dict() for d in self.important_dates],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Self:
        data = data or {}
        return cls(
            key_people=[KeyPerson(**p) for p in data.get("key_people", [])],
            important_dates=[ImportantDate(**d) for d in data.get("important_dates", [])],
        )


@dataclass
class PersonaFact:
    content: str
    confidence: float
    source: str = ""
    learned_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "content": self.content,
            "confidence": self.confidence,
            "source": self.source,
            "learned_at": dt_to_str(self.learned_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        return cls(
            content=data["content"],
            confidence=float(data.get("confidence", 0.0)),
            source=data.get("source", ""),
            learned_at=dt_from_str(data.get("learned_at")) or utcnow(),
        )


@dataclass
class UserPersona:
    """Learned profile for one (user, tenant, chatbot) scope."""

    user_id: str
    tenant_id: str
    chatbot_id: str | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    communication_style: CommunicationStyle = field(default_factory=CommunicationStyle)
    professional_profile: ProfessionalProfile = field(default_factory=ProfessionalProfile)
    preferences: PersonalPreferences = field(default_factory=PersonalPreferences)
    relationships: Relationships = field(default_factory=Relationships)
    facts: dict[str, list[PersonaFact]] = field(default_factory=dict)
    overall_confidence: float = 0.0
    conversations_analyzed: int = 0
    version: int = 1
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def key(self) -> str:
        return persona_key(self.user_id, self.tenant_id, self.chatbot_id)

    @property
    def fact_count(self) -> int:
        return sum(len(items) for items in self.facts.values())

    def copy(self) -> UserPersona:
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "tenant_id": self.tenant_id,
            "chatbot_id": self.chatbot_id,
            "communication_style": self.communication_style.to_dict(),
            "professional_profile": self.professional_profile.to_dict(),
            "preferences": self.preferences.to_dict(),
            "relationships": self.relationships.to_dict(),
            "facts": {k: [f.to_dict() for f in v] for k, v in self.facts.items()},
            "overall_confidence": self.overall_confidence,
            "conversations_analyzed": self.conversations_analyzed,
            "version": self.version,
            "created_at": dt_to_str(self.created_at),
            "updated_at": dt_to_str(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            tenant_id=data["tenant_id"],
            chatbot_id=data.get("chatbot_id"),
            communication_style=CommunicationStyle.from_dict(data.get("communication_style")),
            professional_profile=ProfessionalProfile.from_dict(data.get("professional_profile")),
            preferences=PersonalPreferences.from_dict(data.get("preferences")),
            relationships=Relationships.from_dict(data.get("relationships")),
            facts={
                k: [PersonaFact.from_dict(f) for f in v]
                for k, v in (data.get("facts") or {}).items()
            },
            overall_confidence=float(data.get("overall_confidence", 0.0)),
            conversations_analyzed=int(data.get("conversations_analyzed", 0)),
            version=int(data.get("version", 1)),
            created_at=dt_from_str(data.get("created_at")) or utcnow(),
            updated_at=dt_from_str(data.get("updated_at")) or utcnow(),
        )
