"""Fixed personas for the two pipeline stages and the writer's input builder."""

from __future__ import annotations

from typing import Optional

RESEARCH_PERSONA = (
    "You are a meticulous research assistant. Read the conversation and work out "
    "what the user's final request needs. Use the web_search tool whenever current "
    "or factual information would improve the answer; you may search several times "
    "with different queries. When you have enough material, reply with a concise "
    "research summary: key facts, figures and the sources they came from. Do not "
    "write the final piece yourself."
)

WRITER_PERSONA = (
    "You are a skilled writer. Using only the research summary provided, produce "
    "the final piece the user asked for. Follow any style notes you are given. Do "
    "not mention the research process or that a summary was supplied."
)


def build_writer_input(
    user_request: str,
    research_summary: str,
    style_notes: Optional[str] = None,
) -> str:
    """Compose the single user message the writer stage receives.

    Only the original request, the research summary and the caller's
    optional style notes reach the writer; earlier turns do not.
    """
    sections = [
        "## Request",
        user_request.strip(),
        "",
        "## Research summary",
        research_summary.strip(),
    ]
    if style_notes and style_notes.strip():
        sections.extend(["", "## Style notes", style_notes.strip()])
    return "\n".join(sections)
