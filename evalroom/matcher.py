"""Match candidate resolution for calendar invitations.

Stages run in order and short-circuit:

1. **exact_email** -- an attendee equals a startup contact email and another
   attendee equals a juror email: one suggestion at 100, nothing else runs.
2. **domain** -- exactly one startup and exactly one juror share an
   organisation domain with the attendees: one suggestion banded 70-84.
3. **ai_fuzzy** -- the LLM sees the event and bounded candidate lists and
   must call ``suggest_matches`` with complete pairs only.

Suggestions are never applied here. A failing AI stage never raises; the
caller gets the earlier stages' suggestions plus an error string.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Sequence

from evalroom.config import get_settings
from evalroom.errors import UpstreamGenerationError
from evalroom.llm import LLMClient, ToolSpec
from evalroom.models import CalendarInvitation, Juror, Startup
from evalroom.utils import normalize_email, organisation_domain

log = logging.getLogger(__name__)

MAX_SUGGESTIONS = 3
MIN_CONFIDENCE = 60
AI_STAGE_THRESHOLD = 85
DOMAIN_SIDE_CONFIDENCE = 75
DOMAIN_BAND = (70, 84)


def confidence_band(score: float) -> str | None:
    """Label for *score*; ``None`` means the suggestion is suppressed."""
    if score >= 95:
        return "near_certain"
    if score >= 85:
        return "very_likely"
    if score >= 70:
        return "probable"
    if score >= 60:
        return "possible"
    return None


@dataclass
class MatchSuggestion:
    startup_id: int
    juror_id: int
    startup_confidence: float
    juror_confidence: float
    combined_confidence: float
    reasoning: str
    match_method: str
    startup_name: str = ""
    juror_name: str = ""

    @property
    def band(self) -> str | None:
        return confidence_band(self.combined_confidence)

    def to_dict(self) -> dict[str, Any]:
        return {
            "startup_id": self.startup_id, "startup_name": self.startup_name,
            "juror_id": self.juror_id, "juror_name": self.juror_name,
            "startup_confidence": self.startup_confidence,
            "juror_confidence": self.juror_confidence,
            "combined_confidence": self.combined_confidence,
            "reasoning": self.reasoning, "match_method": self.match_method,
            "band": self.band,
        }


@dataclass
class MatchResolution:
    suggestions: list[MatchSuggestion] = field(default_factory=list)
    error: str | None = None
    error_category: str | None = None

    @property
    def needs_manual_match(self) -> bool:
        return not self.suggestions


# ---------------------------------------------------------------------------
# Rule stages
# ---------------------------------------------------------------------------


def _exact_stage(
    attendees: set[str], startups: Sequence[Startup], jurors: Sequence[Juror],
) -> MatchSuggestion | None:
    startup = next((s for s in startups if normalize_email(s.contact_email) in attendees), None)
    juror = next((j for j in jurors if normalize_email(j.email) in attendees), None)
    if startup is None or juror is None:
        return None
    return MatchSuggestion(
        startup_id=startup.id, juror_id=juror.id,
        startup_confidence=100, juror_confidence=100, combined_confidence=100,
        reasoning=f"Attendee emails exactly match {startup.contact_email} and {juror.email}",
        match_method="exact_email",
        startup_name=startup.name, juror_name=juror.name,
    )


def _side_confidence(email: str, attendees: set[str]) -> int:
    return 100 if normalize_email(email) in attendees else DOMAIN_SIDE_CONFIDENCE


def _domain_stage(
    attendees: set[str], startups: Sequence[Startup], jurors: Sequence[Juror],
) -> MatchSuggestion | None:
    domains = {organisation_domain(a) for a in attendees} - {""}
    if not domains:
        return None
    startup_hits = [s for s in startups if organisation_domain(s.contact_email) in domains]
    juror_hits = [j for j in jurors if organisation_domain(j.email) in domains]
    if len(startup_hits) != 1 or len(juror_hits) != 1:
        return None
    startup, juror = startup_hits[0], juror_hits[0]
    s_conf = _side_confidence(startup.contact_email, attendees)
    j_conf = _side_confidence(juror.email, attendees)
    low, high = DOMAIN_BAND
    combined = min(high, max(low, round((s_conf + j_conf) / 2)))
    return MatchSuggestion(
        startup_id=startup.id, juror_id=juror.id,
        startup_confidence=s_conf, juror_confidence=j_conf, combined_confidence=combined,
        reasoning=(
            f"Attendee domains match {organisation_domain(startup.contact_email)} "
            f"and {organisation_domain(juror.email)}"
        ),
        match_method="domain",
        startup_name=startup.name, juror_name=juror.name,
    )


# ---------------------------------------------------------------------------
# AI stage
# ---------------------------------------------------------------------------

MATCH_SYSTEM_PROMPT = """\
You are an expert at matching calendar meeting attendees to database records.

Your task: analyse the calendar invitation and suggest which startup and which \
juror from the candidate lists are most likely attending this meeting.

MATCHING SIGNALS:
1. Email similarity (typos, variations like john.smith vs johnsmith)
2. Name matching (the event title often contains participant names)
3. Domain matching (emails from the same company)
4. Context clues (event description, location)

OUTPUT RULES:
- Provide at most 3 suggestions, ordered by confidence
- Every suggestion MUST contain BOTH a startup_id and a juror_id (complete pair)
- Give separate 0-100 confidences for the startup and the juror
- Explain each match briefly
- If no pair reaches 60, return an empty list

Be conservative with confidence:
- 95-100: near-certain (exact email with minor variation)
- 85-94: very likely (strong name or domain evidence)
- 70-84: probable (several weak signals)
- 60-69: possible (one weak signal)
- below 60: do not suggest
"""

SUGGEST_MATCHES_TOOL = ToolSpec(
    name="suggest_matches",
    description="Return structured match suggestions with confidence scores",
    parameters={
        "type": "object",
        "properties": {
            "suggestions": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "startup_id": {"type": "integer"},
                        "startup_confidence": {"type": "number", "minimum": 0, "maximum": 100},
                        "startup_reasoning": {"type": "string"},
                        "juror_id": {"type": "integer"},
                        "juror_confidence": {"type": "number", "minimum": 0, "maximum": 100},
                        "juror_reasoning": {"type": "string"},
                        "combined_confidence": {"type": "number", "minimum": 0, "maximum": 100},
                        "match_method": {"type": "string"},
                    },
                    "required": [
                        "startup_id", "startup_confidence", "startup_reasoning",
                        "juror_id", "juror_confidence", "juror_reasoning",
                        "combined_confidence",
                    ],
                },
            },
        },
        "required": ["suggestions"],
    },
)


def _prioritise(candidates: Sequence, email_of, domains: set[str], limit: int) -> list:
    """Candidates sharing an attendee domain first, then input order, capped at *limit*."""
    near = [c for c in candidates if organisation_domain(email_of(c)) in domains]
    rest = [c for c in candidates if organisation_domain(email_of(c)) not in domains]
    return (near + rest)[:limit]


def build_match_prompt(
    invitation: CalendarInvitation, startups: Sequence[Startup], jurors: Sequence[Juror],
) -> str:
    lines = [
        "CALENDAR EVENT:",
        f"Title: {invitation.event_summary or 'N/A'}",
        f"Description: {invitation.event_description or 'N/A'}",
        f"Location: {invitation.event_location or 'N/A'}",
        f"Attendee Emails: {', '.join(invitation.attendee_emails) or 'N/A'}",
        "",
        f"AVAILABLE STARTUPS ({len(startups)}):",
    ]
    for i, s in enumerate(startups, 1):
        lines.append(
            f"{i}. ID: {s.id}\n   Name: {s.name}\n   Email: {s.contact_email or 'N/A'}\n"
            f"   Description: {(s.description or 'N/A')[:100]}\n"
            f"   Verticals: {s.verticals or 'N/A'}"
        )
    lines += ["", f"AVAILABLE JURORS ({len(jurors)}):"]
    for i, j in enumerate(jurors, 1):
        lines.append(
            f"{i}. ID: {j.id}\n   Name: {j.name}\n   Email: {j.email or 'N/A'}\n"
            f"   Company: {j.company or 'N/A'}"
        )
    lines += ["", "Analyse and suggest the best matches."]
    return "\n".join(lines)


def _clamp(val: Any) -> float:
    try:
        num = float(val)
    except (TypeError, ValueError):
        return 0.0
    return max(0.0, min(100.0, num))


def _as_id(val: Any) -> int | None:
    try:
        return int(val)
    except (TypeError, ValueError):
        return None


def parse_ai_suggestions(
    raw: dict[str, Any], startups: Sequence[Startup], jurors: Sequence[Juror],
) -> list[MatchSuggestion]:
    """Keep only complete, known pairs at or above the minimum confidence."""
    by_startup = {s.id: s for s in startups}
    by_juror = {j.id: j for j in jurors}
    items = raw.get("suggestions") if isinstance(raw, dict) else None
    result: list[MatchSuggestion] = []
    for item in items if isinstance(items, list) else []:
        if not isinstance(item, dict):
            continue
        startup = by_startup.get(_as_id(item.get("startup_id")))
        juror = by_juror.get(_as_id(item.get("juror_id")))
        if startup is None or juror is None:
            continue
        combined = _clamp(item.get("combined_confidence"))
        if combined < MIN_CONFIDENCE:
            continue
        reasons = [str(item.get(k) or "").strip() for k in ("startup_reasoning", "juror_reasoning")]
        result.append(MatchSuggestion(
            startup_id=startup.id, juror_id=juror.id,
            startup_confidence=_clamp(item.get("startup_confidence")),
            juror_confidence=_clamp(item.get("juror_confidence")),
            combined_confidence=combined,
            reasoning="; ".join(r for r in reasons if r),
            match_method="ai_fuzzy",
            startup_name=startup.name, juror_name=juror.name,
        ))
    return result


def _merge(found: list[MatchSuggestion]) -> list[MatchSuggestion]:
    best: dict[tuple[int, int], MatchSuggestion] = {}
    for s in found:
        key = (s.startup_id, s.juror_id)
        if key not in best or s.combined_confidence > best[key].combined_confidence:
            best[key] = s
    ranked = sorted(best.values(), key=lambda s: s.combined_confidence, reverse=True)
    return [s for s in ranked if s.combined_confidence >= MIN_CONFIDENCE][:MAX_SUGGESTIONS]


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


async def resolve(
    invitation: CalendarInvitation,
    startups: Sequence[Startup],
    jurors: Sequence[Juror],
    client: LLMClient | None = None,
    *,
    candidate_limit: int | None = None,
) -> MatchResolution:
    """Ranked suggestions for *invitation*; 0-3 entries, highest first.

    ``client=None`` skips the AI stage.
    """
    attendees = {normalize_email(e) for e in invitation.attendee_emails} - {""}

    exact = _exact_stage(attendees, startups, jurors)
    if exact is not None:
        return MatchResolution(suggestions=[exact])

    found: list[MatchSuggestion] = []
    domain = _domain_stage(attendees, startups, jurors)
    if domain is not None:
        found.append(domain)
        if domain.combined_confidence >= AI_STAGE_THRESHOLD:
            return MatchResolution(suggestions=_merge(found))

    if client is None or not startups or not jurors:
        return MatchResolution(suggestions=_merge(found))

    limit = candidate_limit or get_settings().ai_candidate_limit
    domains = {organisation_domain(a) for a in attendees} - {""}
    bounded_startups = _prioritise(startups, lambda s: s.contact_email, domains, limit)
    bounded_jurors = _prioritise(jurors, lambda j: j.email, domains, limit)
    try:
        raw = await client.call_tool(
            MATCH_SYSTEM_PROMPT,
            build_match_prompt(invitation, bounded_startups, bounded_jurors),
            SUGGEST_MATCHES_TOOL,
            max_tokens=4096,
            temperature=0.3,
        )
    except UpstreamGenerationError as exc:
        log.warning("AI matching failed for invitation %s: %s", invitation.id, exc.message)
        return MatchResolution(
            suggestions=_merge(found), error=exc.message, error_category=exc.category,
        )
    except Exception as exc:
        log.warning("AI matching failed for invitation %s: %s", invitation.id, exc, exc_info=True)
        return MatchResolution(
            suggestions=_merge(found), error=f"AI matching failed: {exc}", error_category="unavailable",
        )

    found.extend(parse_ai_suggestions(raw, bounded_startups, bounded_jurors))
    ranked = _merge(found)
    log.info("AI matching produced %d suggestion(s) for invitation %s", len(ranked), invitation.id)
    return MatchResolution(suggestions=ranked)
