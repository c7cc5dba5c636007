"""Tests for system prompt and message assembly."""

from __future__ import annotations

from datetime import UTC, datetime

from ai_orchestrator.adapters.prompts import (
    ASSISTANT_NAME,
    PERSONALITIES,
    build_messages,
    build_system_prompt,
)
from ai_orchestrator.model_router.types import (
    Attachment,
    ConversationTurn,
    Feature,
    PersonalityMode,
    UserContext,
    UserProfile,
)
from tests.conftest import PNG_BYTES, make_request


def test_persona_always_present():
    prompt = build_system_prompt(make_request("hi"))
    assert prompt.startswith(f"You are {ASSISTANT_NAME}")
    assert "Your task" not in prompt  # chat has no feature instruction


def test_feature_instruction():
    prompt = build_system_prompt(make_request("dentist at 3", feature=Feature.TASK_PARSING))
    assert "Your task: Parse the user's natural language input" in prompt


def test_personality_line():
    context = UserContext(
        profile=UserProfile(user_id="u1", personality_mode=PersonalityMode.ANALYTICAL)
    )
    prompt = build_system_prompt(make_request("hi", context=context))
    assert f"Personality: {PERSONALITIES[PersonalityMode.ANALYTICAL]}" in prompt


def test_context_sections():
    context = UserContext(
        goals=({"term": "short", "text": "ship the release"},),
        recent_tasks=tuple({"title": f"task {i}"} for i in range(8)),
        recent_notes=({"title": "retro notes"},),
        current_time=datetime(2026, 3, 14, 9, 30, tzinfo=UTC),
        location="Prague",
    )
    prompt = build_system_prompt(make_request("plan my day", context=context))

    assert "- short: ship the release" in prompt
    assert "- task 4" in prompt
    assert "- task 5" not in prompt
    assert "- retro notes" in prompt
    assert "Current time: 2026-03-14T09:30:00+00:00" in prompt
    assert "Location: Prague" in prompt


def test_messages_order_and_window():
    history = (
        ConversationTurn(role="user", content="one"),
        ConversationTurn(role="assistant", content="two"),
        ConversationTurn(role="user", content="three"),
    )
    messages = build_messages(make_request("four", history=history), history_window=2)

    assert [m["role"] for m in messages] == ["system", "assistant", "user", "user"]
    assert [m["content"] for m in messages[1:]] == ["two", "three", "four"]


def test_zero_window_drops_history():
    history = (ConversationTurn(role="user", content="one"),)
    messages = build_messages(make_request("two", history=history), history_window=0)
    assert len(messages) == 2


def test_system_prompt_override():
    messages = build_messages(make_request("hi"), system_prompt="Be brief.")
    assert messages[0] == {"role": "system", "content": "Be brief."}


def test_images_ignored_without_vision():
    request = make_request(
        "describe", attachments=(Attachment(mime_type="image/png", data=PNG_BYTES),)
    )
    messages = build_messages(request, vision=False)
    assert messages[-1] == {"role": "user", "content": "describe"}


def test_only_images_become_parts():
    request = make_request(
        "describe",
        feature=Feature.VISION_OCR,
        attachments=(
            Attachment(mime_type="image/jpeg", data=b"\xff\xd8\xff"),
            Attachment(mime_type="application/pdf", data=b"%PDF"),
        ),
    )
    content = build_messages(request, vision=True)[-1]["content"]
    assert len(content) == 2
    assert content[1]["image_url"]["url"] == "data:image/jpeg;base64,/9j/"
