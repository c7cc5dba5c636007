"""System prompt and message assembly for chat-style backends.

One persona preamble, an optional personality line, one instruction per
feature, then whatever user context is present.
"""

from __future__ import annotations

import base64
from typing import Any

from ai_orchestrator.model_router.types import AIRequest, Feature, PersonalityMode

ASSISTANT_NAME = "Kiko"

PERSONA = (
    f"You are {ASSISTANT_NAME}, an AI assistant for a personal productivity platform. "
    "You help users manage tasks, notes and goals, and provide strategic insights."
)

PERSONALITIES: dict[PersonalityMode, str] = {
    PersonalityMode.SUPPORTIVE: (
        "Be encouraging, empathetic, and supportive. Celebrate wins and offer gentle guidance."
    ),
    PersonalityMode.TOUGH_LOVE: (
        "Be direct and challenging, and push the user to their potential. Hold them accountable."
    ),
    PersonalityMode.ANALYTICAL: (
        "Be logical and data-driven, and focus on optimization. Provide structured analysis."
    ),
    PersonalityMode.MOTIVATIONAL: (
        "Be energetic, inspiring, and action-oriented. Use motivational language."
    ),
}

FEATURE_INSTRUCTIONS: dict[Feature, str] = {
    Feature.TASK_PARSING: (
        "Parse the user's natural language input into a structured task. Extract title, "
        "date/time, duration, location and any other relevant details. Return JSON."
    ),
    Feature.NOTE_GENERATION: (
        "Help the user create comprehensive notes. If they provide minimal information, "
        "ask clarifying questions first. Then generate well-structured notes with headers, "
        "bullet points and key takeaways."
    ),
    Feature.NOTE_SUMMARY: "Summarize the note concisely, keeping decisions and action items.",
    Feature.NOTE_AUTOFILL: "Complete the partially written note in the user's own style.",
    Feature.STRATEGIC_BRIEFING: (
        "Generate a strategic daily briefing that synthesizes the user's goals, tasks and "
        "recent notes. Provide actionable insights and recommendations."
    ),
    Feature.MINDMAP_GENERATION: (
        "Analyze the user's goals, tasks and notes to create a mind map showing connections "
        'and relationships. Return JSON with "nodes" and "edges".'
    ),
    Feature.VISION_OCR: "Transcribe all text visible in the attached image(s) verbatim.",
    Feature.VISION_EVENT_DETECTION: (
        "Find calendar events in the attached image(s). Return JSON with a list of events "
        "(title, date, time, location)."
    ),
    Feature.CALENDAR_EVENT_PARSING: (
        "Parse the input into a calendar event. Return JSON with title, start, end and location."
    ),
    Feature.EMAIL_EVENT_EXTRACTION: (
        "Extract every event, deadline and meeting from this email. Return JSON."
    ),
    Feature.GROUNDED_RESEARCH: (
        "Provide a detailed answer. Cite your sources with numbered references."
    ),
    Feature.COMPLETION_SUMMARY: (
        "Summarize what the user accomplished and suggest a sensible next step."
    ),
}

_CONTEXT_ITEMS = 5


def build_system_prompt(request: AIRequest) -> str:
    """Persona + personality + feature instruction + user context."""
    parts = [PERSONA]
    context = request.context

    if context is not None and context.profile is not None and context.profile.personality_mode:
        parts.append(f"Personality: {PERSONALITIES[context.profile.personality_mode]}")

    instruction = FEATURE_INSTRUCTIONS.get(request.feature)
    if instruction:
        parts.append(f"Your task: {instruction}")

    if context is not None:
        if context.goals:
            goals = "\n".join(
                f"- {g.get('term', 'goal')}: {g.get('text', '')}" for g in context.goals
            )
            parts.append(f"User's goals:\n{goals}")
        if context.recent_tasks:
            tasks = "\n".join(
                f"- {t.get('title', '')}" for t in context.recent_tasks[:_CONTEXT_ITEMS]
            )
            parts.append(f"Recent tasks:\n{tasks}")
        if context.recent_notes:
            notes = "\n".join(
                f"- {n.get('title', '')}" for n in context.recent_notes[:_CONTEXT_ITEMS]
            )
            parts.append(f"Recent notes:\n{notes}")
        if context.current_time is not None:
            parts.append(f"Current time: {context.current_time.isoformat()}")
        if context.location:
            parts.append(f"Location: {context.location}")

    return "\n\n".join(parts)


def build_messages(
    request: AIRequest,
    *,
    history_window: int = 10,
    vision: bool = False,
    system_prompt: str | None = None,
) -> list[dict[str, Any]]:
    """OpenAI-format message list for litellm.

    Args:
        request: The request being dispatched
        history_window: Number of most recent history turns to include
        vision: Attach image attachments as data-URL content parts
        system_prompt: Override the generated system prompt
    """
    messages: list[dict[str, Any]] = [
        {"role": "system", "content": system_prompt or build_system_prompt(request)}
    ]
    if history_window > 0:
        messages.extend(
            {"role": turn.role, "content": turn.content}
            for turn in request.history[-history_window:]
        )

    images = [a for a in request.attachments if a.is_image] if vision else []
    if images:
        content: list[dict[str, Any]] = [{"type": "text", "text": request.message}]
        for attachment in images:
            encoded = base64.b64encode(attachment.data).decode("ascii")
            content.append(
                {
                    "type": "image_url",
                    "image_url": {"url": f"data:{attachment.mime_type};base64,{encoded}"},
                }
            )
        messages.append({"role": "user", "content": content})
    else:
        messages.append({"role": "user", "content": request.message})
    return messages
