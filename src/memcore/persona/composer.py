"""Email drafting in a user's learned style.

Template-based: the persona decides formality, length, greeting and
signoff; the request supplies recipient, purpose and key points.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Literal

from memcore.persona.models import CommunicationStyle, UserPersona

LOW_CONFIDENCE_NOTE = (
    "Note: This is based on limited knowledge about your communication style. "
    "The email may need adjustments."
)

FORMALITY_THRESHOLD = 0.6
VERBOSITY_THRESHOLD = 0.6

# (keywords, formal line, casual line) per language
OPENINGS = {
    "no": [
        (("follow up", "oppfølging"), "Jeg skriver for å følge opp vår tidligere samtale.", "Bare en rask oppfølging på det vi snakket om."),
        (("request", "forespørsel"), "Jeg henvender meg til deg angående en forespørsel.", "Jeg lurer på om du kunne hjelpe meg med noe."),
        (("meeting", "møte"), "Jeg skriver for å avtale et møte.", "Jeg ville høre om du har tid til et møte."),
    ],
    "en": [
        (("follow up",), "I am writing to follow up on our previous conversation.", "Just following up on what we discussed."),
        (("request",), "I am reaching out regarding a request.", "I was wondering if you could help me with something."),
        (("meeting",), "I am writing to schedule a meeting.", "I wanted to see if you have time for a meeting."),
    ],
}
DEFAULT_OPENING = {
    "no": ("Jeg håper denne e-posten finner deg vel.", "Håper alt står bra til!"),
    "en": ("I hope this email finds you well.", "Hope you're doing well!"),
}
CLOSINGS = {
    "no": ("Vennligst ta kontakt dersom du har spørsmål.", "Gi meg beskjed hvis du har spørsmål!"),
    "en": ("Please do not hesitate to reach out if you have any questions.", "Let me know if you have any questions!"),
}
SIGNOFFS = {
    "no": ("Med vennlig hilsen,", "Beste hilsen,"),
    "en": ("Best regards,", "Thanks,"),
}


@dataclass
class EmailRequest:
    recipient: str
    purpose: str
    key_points: list[str] = field(default_factory=list)
    tone_override: Literal["formal", "casual"] | None = None
    length: Literal["short", "medium", "long"] | None = None


@dataclass
class ComposedEmail:
    subject: str
    body: str
    confidence_score: float
    style_match_score: float
    notes: str | None = None


def _language(style: CommunicationStyle) -> str:
    return "no" if style.preferred_language == "no" else "en"


def is_formal(style: CommunicationStyle, request: EmailRequest) -> bool:
    if request.tone_override is not None:
        return request.tone_override == "formal"
    return style.formality > FORMALITY_THRESHOLD


def is_detailed(style: CommunicationStyle, request: EmailRequest) -> bool:
    if request.length is not None:
        return request.length == "long"
    return style.verbosity > VERBOSITY_THRESHOLD


def select_greeting(style: CommunicationStyle, formal: bool, recipient: str) -> str:
    if style.greetings:
        greeting = style.greetings[0]
        if "{name}" in greeting:
            return greeting.replace("{name}", recipient)
        return f"{greeting.rstrip('!,')} {recipient},"
    if _language(style) == "no":
        return f"Hei {recipient}," if formal else f"Hei {recipient}!"
    return f"Dear {recipient}," if formal else f"Hi {recipient},"


def select_signoff(style: CommunicationStyle, formal: bool) -> str:
    if style.signoffs:
        return style.signoffs[0]
    formal_line, casual_line = SIGNOFFS[_language(style)]
    return formal_line if formal else casual_line


def opening_line(purpose: str, formal: bool, language: str) -> str:
    lowered = purpose.lower()
    for keywords, formal_line, casual_line in OPENINGS[language]:
        if any(k in lowered for k in keywords):
            return formal_line if formal else casual_line
    formal_line, casual_line = DEFAULT_OPENING[language]
    return formal_line if formal else casual_line


def build_body(request: EmailRequest, formal: bool, detailed: bool, language: str) -> str:
    parts = [opening_line(request.purpose, formal, language)]
    if detailed and len(request.key_points) > 2:
        parts.append("\n".join(f"• {point}" for point in request.key_points))
    else:
        parts.extend(request.key_points)
    formal_close, casual_close = CLOSINGS[language]
    parts.append(formal_close if formal else casual_close)
    return "\n\n".join(parts)


def generate_subject(purpose: str) -> str:
    subject = purpose.strip()
    subject = re.sub(r"^(?:i want to|i need to|please|can you)\s+", "", subject, flags=re.IGNORECASE)
    subject = subject.rstrip(".")
    return subject[:1].upper() + subject[1:]


def style_match_score(persona: UserPersona) -> float:
    style = persona.communication_style
    score = 0.5
    if style.greetings:
        score += 0.15
    if style.signoffs:
        score += 0.15
    score += min(0.2, persona.conversations_analyzed * 0.02)
    return min(1.0, score)


def compose_email(
    persona: UserPersona,
    request: EmailRequest,
    low_confidence_threshold: float = 0.5,
) -> ComposedEmail:
    """Draft an email the way this user would write it."""
    style = persona.communication_style
    formal = is_formal(style, request)
    detailed = is_detailed(style, request)
    language = _language(style)

    greeting = select_greeting(style, formal, request.recipient)
    body = build_body(request, formal, detailed, language)
    signoff = select_signoff(style, formal)

    return ComposedEmail(
        subject=generate_subject(request.purpose),
        body=f"{greeting}\n\n{body}\n\n{signoff}",
        confidence_score=persona.overall_confidence,
        style_match_score=style_match_score(persona),
        notes=LOW_CONFIDENCE_NOTE if persona.overall_confidence < low_confidence_threshold else None,
    )
