"""Content generators for founder communications.

Two content variants are produced here and persisted by
:mod:`evalroom.lifecycle`:

- **VC feedback detail** -- a plain-text digest of the submitted juror
  evaluations for one startup and round. The per-fund dossier is summarised
  by the LLM through the ``generate_founder_feedback`` tool and rendered as
  ``**Heading:**`` lines with ``- `` bullets.
- **Custom email** -- subject and HTML body rendered from the active
  :class:`~evalroom.models.EmailTemplate` for the communication type, with
  the approved VC feedback (or, failing that, the raw evaluations) as the
  feedback section.

Enhancement rewrites existing text in one shot and falls back to
paragraph-sized chunks when the text is very long or the single call fails
for a reason other than a rate limit.
"""
from __future__ import annotations

import html
import logging
import re
from typing import Any, Sequence

from evalroom.errors import GenerationFailed, UpstreamGenerationError
from evalroom.llm import LLMClient, ToolSpec
from evalroom.models import EmailTemplate, Evaluation, Startup

log = logging.getLogger(__name__)

NOT_GENERATED_PLACEHOLDER = "[AI Feedback not yet generated - click Generate to create]"
NO_EVALUATIONS_MESSAGE = "No submitted evaluations found for this startup"

SEPARATOR = "=" * 60
CHUNK_MAX_CHARS = 1800
SINGLE_SHOT_MAX_CHARS = 8000


def is_placeholder(text: str | None) -> bool:
    return "[AI Feedback not yet generated" in (text or "")


# ---------------------------------------------------------------------------
# Email templates
# ---------------------------------------------------------------------------

COMMUNICATION_CATEGORY = {
    "selected": "founder_selection",
    "rejected": "founder_rejection",
    "under-review": "founder_under_review",
    "top-100-feedback": "top-100-feedback",
}

_WRAP_START = (
    '<div style="max-width:680px;margin:0 auto;padding:24px;line-height:1.65;color:#1e293b;">'
)
_WRAP_END = (
    '<p style="margin-top:24px;color:#64748b;font-size:13px;">'
    "Questions? Reply to this email.</p></div>"
)

DEFAULT_TEMPLATES: dict[str, tuple[str, str, str]] = {
    "founder_selection": (
        "Founder Selection",
        "Congratulations {{founder_first_name}}! {{startup_name}} has been selected",
        _WRAP_START
        + "<p>Hi {{founder_first_name}},</p>"
        "<p>We are delighted to let you know that <strong>{{startup_name}}</strong> "
        "is moving forward to the next round. Here is the feedback from our VC partners:</p>"
        "{{vc_feedback_sections}}"
        "<p>We will be in touch shortly with the next steps.</p>"
        + _WRAP_END,
    ),
    "founder_rejection": (
        "Founder Rejection",
        "Thank you for participating, {{startup_name}}",
        _WRAP_START
        + "<p>Hi {{founder_first_name}},</p>"
        "<p>Thank you for the time and effort you put into the evaluation process. "
        "While <strong>{{startup_name}}</strong> will not proceed this time, our VC "
        "partners shared the following feedback:</p>"
        "{{vc_feedback_sections}}"
        "<p>We wish you every success and hope to see you again.</p>"
        + _WRAP_END,
    ),
    "founder_under_review": (
        "Founder Under Review",
        "{{startup_name}}: your application is still under review",
        _WRAP_START
        + "<p>Hi {{founder_first_name}},</p>"
        "<p><strong>{{startup_name}}</strong> is still under review. In the meantime, "
        "here is the feedback collected so far:</p>"
        "{{vc_feedback_sections}}"
        + _WRAP_END,
    ),
    "top-100-feedback": (
        "Top 100 Feedback",
        "Your feedback from the Top 100 evaluation, {{startup_name}}",
        _WRAP_START
        + "<p>Hi {{founder_first_name}},</p>"
        "<p>As one of our Top 100 startups, <strong>{{startup_name}}</strong> received "
        "detailed feedback from our VC partners:</p>"
        "{{vc_feedback_sections}}"
        + _WRAP_END,
    ),
}


def template_category(communication_type: str) -> str:
    return COMMUNICATION_CATEGORY.get(communication_type, "founder_selection")


def render_placeholders(template: str, values: dict[str, str]) -> str:
    for key, value in values.items():
        template = template.replace("{{" + key + "}}", value)
    return template


# ---------------------------------------------------------------------------
# VC feedback dossier
# ---------------------------------------------------------------------------


def _section(title: str, value: str, missing: str) -> list[str]:
    return [f"{title}:", value.strip() if value and value.strip() else missing, ""]


def build_feedback_dossier(evaluations: Sequence[Evaluation]) -> str:
    """Plain-text block per evaluating fund, separated by a rule."""
    blocks: list[str] = []
    for i, ev in enumerate(evaluations, 1):
        juror = ev.juror
        lines = [
            f"VC fund #{i} - {(juror.company if juror else '') or 'VC Fund'}",
            f"Evaluator: {(juror.name if juror else '') or 'Anonymous'}",
            "",
            "Strengths of the startup:",
        ]
        strengths = ev.strengths
        lines += [f"• {s}" for s in strengths] if strengths else ["• No specific strengths provided"]
        lines.append("")
        lines += _section("Main areas that need improvement", ev.improvement_areas,
                          "No specific improvement areas provided")
        lines += _section("Aspects of the pitch that need further development",
                          ev.pitch_development_aspects, "No specific pitch development aspects provided")
        lines += _section("Key areas the team should focus on", ev.overall_notes,
                          "No specific focus areas provided")
        lines += ["Additional comments:", (ev.recommendation or "").strip() or "No additional comments provided"]
        blocks.append("\n".join(lines))
    return f"\n\n{SEPARATOR}\n\n".join(blocks)


FOUNDER_FEEDBACK_SYSTEM_PROMPT = """\
You are a professional feedback writer for a startup evaluation programme. \
Transform juror evaluations into clear, constructive and encouraging feedback \
for startup founders.

Tone:
- Professional but warm
- Specific and actionable; no generic praise without context
- Balanced between strengths and growth areas
- Future-focused and respectful of the founders' effort

Requirements:
- Extract SPECIFIC details from the evaluations
- Say WHY each strength impressed the jurors
- Frame challenges constructively
- Give ACTIONABLE next steps

Avoid harsh criticism, jargon without explanation, and comparisons with \
other startups. Never name individual jurors or funds.
"""

FOUNDER_FEEDBACK_TOOL = ToolSpec(
    name="generate_founder_feedback",
    description="Generate structured feedback for startup founders",
    parameters={
        "type": "object",
        "properties": {
            "strengths": {
                "type": "array", "items": {"type": "string"},
                "description": "3-5 specific strengths, with context about why they stood out",
            },
            "challenges": {
                "type": "array", "items": {"type": "string"},
                "description": "2-3 constructive areas for improvement, framed positively",
            },
            "next_steps": {
                "type": "array", "items": {"type": "string"},
                "description": "3-4 specific, actionable recommendations",
            },
            "overall_summary": {
                "type": "string",
                "description": "2-3 sentence summary that sets a constructive tone",
            },
        },
        "required": ["strengths", "challenges", "next_steps", "overall_summary"],
    },
)


def build_founder_feedback_prompt(
    startup: Startup, round_name: str, evaluations: Sequence[Evaluation],
) -> str:
    scores = [e.overall_score for e in evaluations if e.overall_score is not None]
    lines = [
        f"Generate founder-facing feedback for {startup.name} ({round_name} round).",
        "",
        f"Number of evaluations: {len(evaluations)}",
    ]
    if scores:
        lines.append(f"Average score: {sum(scores) / len(scores):.1f}/10 "
                     f"(range {min(scores):.1f} to {max(scores):.1f})")
    lines += ["", "Evaluations by fund:", "", build_feedback_dossier(evaluations), "",
              "Call generate_founder_feedback with the structured result."]
    return "\n".join(lines)


def _string_list(val: Any) -> list[str]:
    if not isinstance(val, list):
        return []
    return [str(v).strip() for v in val if str(v).strip()]


def render_founder_feedback(args: dict[str, Any]) -> str:
    """Plain text with ``**Heading:**`` lines and ``- `` bullets."""
    parts: list[str] = []
    summary = str(args.get("overall_summary") or "").strip()
    if summary:
        parts.append(f"**Overall Summary:**\n{summary}")
    for heading, key in (
        ("Strengths", "strengths"),
        ("Areas for Improvement", "challenges"),
        ("Recommended Next Steps", "next_steps"),
    ):
        items = _string_list(args.get(key))
        if items:
            parts.append(f"**{heading}:**\n" + "\n".join(f"- {item}" for item in items))
    return "\n\n".join(parts)


async def generate_vc_feedback_text(
    client: LLMClient, startup: Startup, round_name: str, evaluations: Sequence[Evaluation],
) -> str:
    if not evaluations:
        raise GenerationFailed(NO_EVALUATIONS_MESSAGE, category="invalid_input", retryable=False)
    args = await client.call_tool(
        FOUNDER_FEEDBACK_SYSTEM_PROMPT,
        build_founder_feedback_prompt(startup, round_name, evaluations),
        FOUNDER_FEEDBACK_TOOL,
    )
    text = render_founder_feedback(args)
    if not text:
        raise GenerationFailed("LLM returned empty feedback", category="invalid_response")
    return text


# ---------------------------------------------------------------------------
# Email rendering
# ---------------------------------------------------------------------------

_BULLET_RE = re.compile(r"^(\*\s{2,}|-\s|•\s)")


def feedback_to_html(text: str) -> str:
    """Convert approved plain-text feedback into the email's HTML section."""
    parts: list[str] = []
    paragraph: list[str] = []
    in_list = False

    def flush_paragraph():
        if paragraph:
            parts.append(f'<p style="margin:10px 0;line-height:1.6;">{" ".join(paragraph)}</p>')
            paragraph.clear()

    def close_list():
        nonlocal in_list
        if in_list:
            parts.append("</ul>")
            in_list = False

    for line in text.splitlines():
        stripped = line.strip()
        if "here's the enhanced feedback" in stripped.lower():
            continue
        if not stripped:
            flush_paragraph()
            close_list()
            continue
        if stripped.startswith("**") and stripped.endswith("**") and len(stripped) > 4:
            flush_paragraph()
            close_list()
            heading = stripped.replace("**", "")
            parts.append(
                f'<h3 style="color:#1e293b;margin:20px 0 10px;font-weight:600;">{html.escape(heading)}</h3>'
            )
            continue
        if _BULLET_RE.match(stripped):
            flush_paragraph()
            if not in_list:
                parts.append('<ul style="margin:10px 0;padding-left:25px;">')
                in_list = True
            parts.append(f'<li style="margin:5px 0;">{html.escape(_BULLET_RE.sub("", stripped))}</li>')
            continue
        close_list()
        paragraph.append(html.escape(stripped))
    flush_paragraph()
    close_list()
    return (
        '<div style="margin-bottom:30px;padding:25px;background-color:#f9fafb;'
        'border-left:4px solid #3b82f6;border-radius:4px;">'
        + "\n".join(parts) + "</div>"
    )


def evaluations_to_html(evaluations: Sequence[Evaluation]) -> str:
    blocks = []
    for i, ev in enumerate(evaluations, 1):
        company = ev.juror.company if ev.juror and ev.juror.company else ""
        title = f"VC Fund #{i}" + (f" - {html.escape(company)}" if company else "")
        items = "".join(f'<li style="margin:5px 0;">{html.escape(s)}</li>' for s in ev.strengths)
        sections = [
            f'<h3 style="color:#1e293b;margin-top:0;">{title}</h3>',
            f"<strong>Strengths of the startup:</strong><ul>{items}</ul>",
            "<strong>Main areas that need improvement:</strong>"
            f"<p>{html.escape(ev.improvement_areas or 'No specific areas identified')}</p>",
        ]
        for label, value in (
            ("Aspects of the pitch that need further development", ev.pitch_development_aspects),
            ("Key areas the team should focus on", ev.overall_notes),
            ("Additional comments", ev.recommendation),
        ):
            if value:
                sections.append(f"<strong>{label}:</strong><p>{html.escape(value)}</p>")
        blocks.append(
            '<div style="margin-bottom:30px;padding:20px;background-color:#f9f9f9;'
            'border-left:4px solid #2563eb;">' + "".join(sections) + "</div>"
        )
    return "\n".join(blocks)


def render_email(
    template: EmailTemplate,
    startup: Startup,
    *,
    approved_feedback: str | None,
    evaluations: Sequence[Evaluation],
) -> tuple[str, str]:
    """Return ``(subject, body)`` for *startup* from *template*."""
    if approved_feedback and not is_placeholder(approved_feedback):
        sections = feedback_to_html(approved_feedback)
    else:
        sections = evaluations_to_html(evaluations)
    values = {
        "founder_first_name": startup.founder_first_name or "Founder",
        "startup_name": startup.name or "Your Startup",
    }
    subject = render_placeholders(template.subject_template, values)
    body = render_placeholders(template.body_template, {
        **values,
        "vc_feedback_sections": sections or "<p>No feedback sections available yet.</p>",
    })
    return subject, body


def wrap_email_html(body: str) -> str:
    return (
        '<!DOCTYPE html><html><head><meta charset="utf-8">'
        '<meta name="viewport" content="width=device-width, initial-scale=1.0"></head>'
        "<body style=\"font-family:-apple-system,'Segoe UI',Roboto,Arial,sans-serif;"
        'line-height:1.6;color:#1e293b;max-width:600px;margin:0 auto;padding:20px;">'
        f"{body}</body></html>"
    )


def plain_text_to_html(text: str) -> str:
    """Body for content that is stored as plain text rather than HTML."""
    if "<" in text and ">" in text:
        return text
    return feedback_to_html(text)


# ---------------------------------------------------------------------------
# Enhancement
# ---------------------------------------------------------------------------

ENHANCE_SYSTEM_PROMPT = """\
You are a professional feedback editor specialising in startup evaluations. \
Enhance existing feedback so it is more specific, actionable and \
professionally worded.

Guidelines:
1. Make strengths more specific by adding context from the original
2. Make challenges constructive, with clear next steps
3. Replace vague words ("great", "good", "nice") with specific descriptions
4. Keep a professional yet encouraging tone
5. Preserve the original structure and every key point
6. Keep the overall length similar to the original

DO NOT add information that is not in the original feedback. Return only the \
enhanced text.
"""


_BLOCK_END_RE = re.compile(
    r"(?<=</p>)|(?<=</li>)|(?<=</ul>)|(?<=</div>)|(?<=</h3>)|(?<=<br>)", re.IGNORECASE,
)


def _hard_wrap(text: str, max_chars: int, html: bool) -> list[str]:
    pieces = []
    start = 0
    while start < len(text):
        end = min(start + max_chars, len(text))
        if html and end < len(text):
            open_at = text.rfind("<", start, end)
            if open_at > start and text.find(">", open_at, end) == -1:
                end = open_at
        pieces.append(text[start:end])
        start = end
    return pieces


def split_into_chunks(text: str, max_chars: int = CHUNK_MAX_CHARS, *, html: bool = False) -> list[str]:
    """Group paragraphs into chunks of at most *max_chars*.

    Plain text splits on blank lines. HTML splits after block-level closing
    tags and the chunks concatenate back to the original markup. A unit longer
    than *max_chars* is hard-wrapped on its own, outside of any ``<...>``.
    """
    if html:
        units, sep = [u for u in _BLOCK_END_RE.split(text) if u], ""
    else:
        units, sep = re.split(r"\n{2,}", text), "\n\n"
    chunks: list[str] = []
    current = ""
    for unit in units:
        candidate = f"{current}{sep}{unit}" if current else unit
        if len(candidate) <= max_chars:
            current = candidate
            continue
        if current:
            chunks.append(current)
        if len(unit) <= max_chars:
            current = unit
        else:
            chunks.extend(_hard_wrap(unit, max_chars, html))
            current = ""
    if current:
        chunks.append(current)
    return [c for c in chunks if c]


async def enhance_text(
    client: LLMClient, text: str, *, startup_name: str, round_name: str, label: str,
    html: bool = False,
) -> str:
    """Return an improved version of *text*; raises UpstreamGenerationError.

    With *html* the chunked fallback splits on block tags and asks the model
    to keep the markup, and the enhanced chunks are concatenated unchanged.
    """
    if is_placeholder(text):
        raise GenerationFailed(
            "Cannot enhance placeholder feedback. Generate feedback first.",
            category="invalid_input", retryable=False,
        )
    if len(text) <= SINGLE_SHOT_MAX_CHARS:
        prompt = (
            f"Enhance this {label} for {startup_name} ({round_name} round):\n\n{text}\n\n"
            "Make it more specific, actionable and professional while keeping all "
            "original insights and tone."
        )
        try:
            return await client.complete(ENHANCE_SYSTEM_PROMPT, prompt, max_tokens=3000, temperature=0.7)
        except UpstreamGenerationError as exc:
            if exc.is_rate_limit:
                raise
            log.warning("Single-shot enhancement failed for %s, using chunks: %s", startup_name, exc.message)

    chunks = split_into_chunks(text, html=html)
    keep_markup = " Keep every HTML tag exactly as given." if html else ""
    log.info("Enhancing %s in %d chunk(s)", startup_name, len(chunks))
    enhanced: list[str] = []
    for i, chunk in enumerate(chunks, 1):
        prompt = (
            f"Enhance this section for {startup_name} ({round_name} round):\n\n{chunk}\n\n"
            "Focus on clarity, specificity and actionable recommendations. "
            "Preserve structure and meaning. Do not add new facts."
            f"{keep_markup}"
        )
        try:
            enhanced.append(
                await client.complete(ENHANCE_SYSTEM_PROMPT, prompt, max_tokens=600, temperature=0.7)
            )
        except UpstreamGenerationError as exc:
            if exc.is_rate_limit:
                raise
            raise GenerationFailed(
                f"AI enhancement failed on section {i}. Try again in a moment or shorten the text.",
                category=exc.category,
            ) from exc
    return ("" if html else "\n\n").join(enhanced)


_VAGUE_RE = re.compile(r"\b(great|good|nice|excellent)\b", re.IGNORECASE)


def describe_improvements(original: str, enhanced: str) -> list[str]:
    notes = []
    if len(enhanced) > len(original) * 1.1:
        notes.append("Added more specific details and context")
    if _VAGUE_RE.search(original) and not _VAGUE_RE.search(enhanced):
        notes.append("Replaced vague language with specific descriptions")
    if enhanced.count("- ") + enhanced.count("•") > original.count("- ") + original.count("•"):
        notes.append("Added more actionable recommendations")
    return notes or ["Improved clarity and professional tone"]
