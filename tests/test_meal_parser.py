import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from openai import APIConnectionError
from tenacity import wait_none

from fakes import FakeParser
from meal_errors import MalformedParserOutput, TransientRemoteFailure
from meal_models import ClarificationType, MealDraft
from meal_parser import (
    OpenAIImageReader,
    OpenAIMealParser,
    RetryingMealParser,
    draft_from_json,
)


def completion(content):
    response = MagicMock()
    response.choices = [MagicMock(message=MagicMock(content=content))]
    return response


def mock_client(*, returns=None, raises=None):
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=returns, side_effect=raises)
    return client


SAMPLE = {
    "category": "LUNCH",
    "date": "2025-09-21T12:30:00",
    "logTime": True,
    "items": [
        {"quantity": 4, "unit": "unit", "name": "Egg", "originalTerm": "huevos"},
        {"quantity": "100", "unit": "grams", "name": "Rice"},
        {"quantity": 1, "unit": "", "name": ""},
    ],
    "needsClarification": True,
    "clarifications": [
        {"type": "MISSING_SIZE", "itemName": "Egg", "question": "¿De qué tamaño?"},
        {"type": "MISSING_WEIGHT", "itemName": "Rice", "question": "¿Cuánto arroz?"},
        {"type": "UNCLEAR_FOOD", "itemName": "Carne", "question": "¿Qué carne?"},
        {"type": "SOMETHING_NEW", "itemName": "Pan", "question": "¿Cuánto pan?"},
    ],
}


# ── Decoding ──

def test_draft_from_fenced_json():
    draft = draft_from_json("```json\n" + json.dumps(SAMPLE) + "\n```")

    assert draft.category == "LUNCH"
    assert draft.date == "2025-09-21"
    assert draft.log_time == "12:30:00"
    assert [i.name for i in draft.items] == ["Egg", "Rice"]
    assert draft.items[1].quantity == 100.0
    assert draft.items[0].original_term == "huevos"
    assert draft.needs_clarification
    assert [c.type for c in draft.clarifications] == [
        ClarificationType.MISSING_SIZE,
        ClarificationType.MISSING_QUANTITY,
        ClarificationType.ITEM_NOT_FOUND,
        ClarificationType.MISSING_QUANTITY,
    ]


def test_past_day_without_time_has_no_log_time():
    draft = draft_from_json(json.dumps({**SAMPLE, "logTime": False, "date": "2025-09-20T00:00:00"}))

    assert draft.date == "2025-09-20"
    assert draft.log_time is None


def test_clarification_flag_needs_questions():
    draft = draft_from_json(json.dumps({**SAMPLE, "clarifications": []}))

    assert draft.needs_clarification is False


def test_error_answer_becomes_draft_error():
    draft = draft_from_json('{"error": "No food information could be extracted."}')

    assert draft.error
    assert draft.items == []


@pytest.mark.parametrize("raw", ["not json at all", "[1, 2]", ""])
def test_unusable_output_raises(raw):
    with pytest.raises(MalformedParserOutput):
        draft_from_json(raw)


# ── Retry wrapper ──

@pytest.mark.asyncio
async def test_transient_failures_are_retried():
    draft = MealDraft(items=[])
    inner = FakeParser(TransientRemoteFailure("503"), TransientRemoteFailure("timeout"), draft)

    result = await RetryingMealParser(inner, attempts=3, wait=wait_none()).parse("2 huevos")

    assert result is draft
    assert len(inner.calls) == 3


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts():
    inner = FakeParser(TransientRemoteFailure("down"))

    with pytest.raises(TransientRemoteFailure):
        await RetryingMealParser(inner, attempts=3, wait=wait_none()).parse("2 huevos")

    assert len(inner.calls) == 3


@pytest.mark.asyncio
async def test_malformed_output_is_not_retried():
    inner = FakeParser(MalformedParserOutput("bad"))

    with pytest.raises(MalformedParserOutput):
        await RetryingMealParser(inner, attempts=3, wait=wait_none()).parse("2 huevos")

    assert len(inner.calls) == 1


# ── OpenAI adapters ──

@pytest.mark.asyncio
async def test_openai_parser_sends_context_and_preferences():
    client = mock_client(returns=completion(json.dumps(SAMPLE)))
    parser = OpenAIMealParser(client=client, model="gpt-4o-mini")

    draft = await parser.parse("Meal description: 4 huevos", preferences='- "arepita" -> Arepa')

    assert len(draft.items) == 2
    kwargs = client.chat.completions.create.call_args.kwargs
    assert kwargs["model"] == "gpt-4o-mini"
    assert kwargs["temperature"] == 0
    system, user = kwargs["messages"]
    assert "USER PREFERENCES" in system["content"]
    assert "arepita" in system["content"]
    assert user["content"] == "Meal description: 4 huevos"


@pytest.mark.asyncio
async def test_openai_connection_errors_are_transient():
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    client = mock_client(raises=APIConnectionError(request=request))

    with pytest.raises(TransientRemoteFailure):
        await OpenAIMealParser(client=client).parse("2 huevos")


@pytest.mark.asyncio
async def test_image_reader_returns_text_or_none():
    reader = OpenAIImageReader(client=mock_client(returns=completion("  2 arepas\n1 cafe ")))
    assert await reader.extract_text(b"\x89PNG") == "2 arepas\n1 cafe"

    empty = OpenAIImageReader(client=mock_client(returns=completion("")))
    assert await empty.extract_text(b"\x89PNG") is None
