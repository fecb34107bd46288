"""
Meal parsing with GPT.

Turns the conversation so far (meal description plus any clarification
answers) into a structured meal draft, and reads text out of meal photos.
"""

import base64
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime

from openai import (
    APIConnectionError,
    APITimeoutError,
    AsyncOpenAI,
    InternalServerError,
    RateLimitError,
)
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from meal_errors import MalformedParserOutput, TransientRemoteFailure
from meal_models import ClarificationItem, ClarificationType, MealDraft, MealItem
from text_utils import parse_number, strip_code_fences

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o-mini"
TRANSIENT_OPENAI_ERRORS = (APIConnectionError, APITimeoutError, RateLimitError, InternalServerError)

MEAL_PROMPT = """You turn a casual meal description (often in Spanish) into JSON for diary logging.
The input may contain follow-up lines with the user's answers to clarification questions; use them.

Return ONLY a JSON object:
{
  "category": "BREAKFAST" | "LUNCH" | "DINNER" | "SNACKS" | "UNCATEGORIZED",
  "date": "yyyy-MM-ddTHH:mm:ss",
  "logTime": true | false,
  "items": [{"quantity": number, "unit": string, "name": string, "originalTerm": string}],
  "needsClarification": true | false,
  "clarifications": [{"type": string, "itemName": string, "originalTerm": string, "question": string}]
}

Rules:
- category: desayuno/breakfast -> BREAKFAST, almuerzo/lunch -> LUNCH, cena/dinner -> DINNER,
  merienda/snack -> SNACKS, otherwise UNCATEGORIZED.
- date: today unless another day is mentioned. Use the stated time, or the current time for today.
- logTime: true if the log is for today or a time of day is stated.
- quantity is always a number ("dos" -> 2).
- unit in English: gramos/gr/g -> "grams", cucharada -> "tbsp", cucharadita -> "tsp",
  unidad -> "unit", pequeño -> "small", mediano -> "medium", grande -> "large",
  taza -> "cup", mililitros -> "ml". Use "" if no unit was given.
- name: the food in English, first letter capitalized. originalTerm: the words the user used.
- Ask for clarification (needsClarification=true) when:
  MISSING_SIZE: eggs, fruit or vegetables without a size;
  MISSING_QUANTITY: no quantity or weight where it matters ("arroz", "pollo");
  AMBIGUOUS_UNIT: "cucharada" could be tbsp or tsp;
  ITEM_NOT_FOUND: the food is too vague ("carne", "queso").
  Questions are short and in the user's language.
- If the user's saved preferences answer a question, apply them instead of asking.
- If no food can be extracted return {"error": "No food information could be extracted."}

Example: "Para el almuerzo comí 4 huevos y 100g de arroz" ->
{"category": "LUNCH", "date": "2025-09-21T12:30:00", "logTime": true,
 "items": [{"quantity": 4, "unit": "unit", "name": "Egg", "originalTerm": "huevos"},
           {"quantity": 100, "unit": "grams", "name": "Rice", "originalTerm": "arroz"}],
 "needsClarification": true,
 "clarifications": [{"type": "MISSING_SIZE", "itemName": "Egg", "originalTerm": "huevos",
                     "question": "¿De qué tamaño eran los huevos? (pequeño, mediano, grande)"}]}
"""

OCR_PROMPT = (
    "Transcribe the handwritten or printed text in this image exactly as written. "
    "It is usually a list of foods eaten in a meal. Return only the text. "
    "If there is no readable text, return an empty string."
)


# ── Draft decoding ────────────────────────────────────────────────────────

def _split_datetime(raw, log_time):
    if not raw:
        return None, None
    try:
        dt = datetime.fromisoformat(str(raw))
    except ValueError:
        return str(raw)[:10], None
    return dt.date().isoformat(), (dt.strftime("%H:%M:%S") if log_time else None)


def draft_from_json(raw):
    """Decode the model's JSON answer into a MealDraft."""
    try:
        data = json.loads(strip_code_fences(raw))
    except (json.JSONDecodeError, TypeError) as exc:
        raise MalformedParserOutput(f"Parser returned invalid JSON: {exc}", raw=raw) from exc
    if not isinstance(data, dict):
        raise MalformedParserOutput("Parser returned a non-object JSON value", raw=raw)

    if data.get("error"):
        return MealDraft(error=str(data["error"]))

    items = []
    for entry in data.get("items") or []:
        if not isinstance(entry, dict) or not str(entry.get("name") or "").strip():
            continue
        items.append(MealItem(
            name=str(entry["name"]).strip(),
            quantity=parse_number(entry.get("quantity")),
            unit=str(entry.get("unit") or "").strip(),
            original_term=entry.get("originalTerm") or entry.get("original_term"),
        ))

    clarifications = []
    for entry in data.get("clarifications") or []:
        if not isinstance(entry, dict):
            continue
        clarifications.append(ClarificationItem(
            type=ClarificationType.parse(entry.get("type")),
            item_name=str(entry.get("itemName") or entry.get("item_name") or "").strip(),
            question=str(entry.get("question") or "").strip(),
            original_term=entry.get("originalTerm") or entry.get("original_term"),
        ))

    day, log_time = _split_datetime(data.get("date"), bool(data.get("logTime")))
    return MealDraft(
        category=data.get("category"),
        date=day,
        log_time=log_time,
        items=items,
        needs_clarification=bool(data.get("needsClarification")) and bool(clarifications),
        clarifications=clarifications,
    )


# ── Parser interface ──────────────────────────────────────────────────────

class MealParser(ABC):

    @abstractmethod
    async def parse(self, context_text: str, preferences: str = None) -> MealDraft:
        """Parse the accumulated conversation into a meal draft."""
        ...


class OpenAIMealParser(MealParser):

    def __init__(self, api_key=None, model=DEFAULT_MODEL, client=None, clock=datetime.now):
        self.client = client or AsyncOpenAI(api_key=api_key)
        self.model = model
        self.clock = clock

    def _messages(self, context_text, preferences):
        system = MEAL_PROMPT + f"\nTODAY: {self.clock().strftime('%Y-%m-%dT%H:%M:%S')}\n"
        if preferences:
            system += f"\nUSER PREFERENCES:\n{preferences}\n"
        return [
            {"role": "system", "content": system},
            {"role": "user", "content": context_text},
        ]

    async def parse(self, context_text, preferences=None):
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                temperature=0,
                response_format={"type": "json_object"},
                messages=self._messages(context_text, preferences),
            )
        except TRANSIENT_OPENAI_ERRORS as exc:
            raise TransientRemoteFailure(f"OpenAI request failed: {exc}") from exc

        raw = (response.choices[0].message.content or "").strip()
        logger.debug("Parser output: %s", raw)
        return draft_from_json(raw)


class RetryingMealParser(MealParser):
    """Retries transient parser failures with exponential backoff."""

    def __init__(self, parser, attempts=3, wait=None):
        self.parser = parser
        self.attempts = attempts
        self.wait = wait if wait is not None else wait_exponential(multiplier=1, min=2, max=10)

    def _log_retry(self, retry_state):
        logger.warning(
            "Meal parser attempt %d failed (%s), retrying",
            retry_state.attempt_number,
            retry_state.outcome.exception(),
        )

    async def parse(self, context_text, preferences=None):
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.attempts),
            wait=self.wait,
            retry=retry_if_exception_type(TransientRemoteFailure),
            before_sleep=self._log_retry,
            reraise=True,
        ):
            with attempt:
                return await self.parser.parse(context_text, preferences)


# ── Photos ────────────────────────────────────────────────────────────────

class ImageTextReader(ABC):

    @abstractmethod
    async def extract_text(self, image_bytes: bytes):
        """Return the text found in the image, or None."""
        ...


class OpenAIImageReader(ImageTextReader):
    """OCR through a vision-capable chat model."""

    def __init__(self, api_key=None, model=DEFAULT_MODEL, client=None):
        self.client = client or AsyncOpenAI(api_key=api_key)
        self.model = model

    async def extract_text(self, image_bytes):
        encoded = base64.b64encode(image_bytes).decode("ascii")
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                temperature=0,
                messages=[{
                    "role": "user",
                    "content": [
                        {"type": "text", "text": OCR_PROMPT},
                        {"type": "image_url", "image_url": {"url": f"data:image/jpeg;base64,{encoded}"}},
                    ],
                }],
            )
        except TRANSIENT_OPENAI_ERRORS as exc:
            raise TransientRemoteFailure(f"OpenAI vision request failed: {exc}") from exc

        text = (response.choices[0].message.content or "").strip()
        return text or None
