"""
One processor per conversation state.

Each processor reads the user's text, may call the parser, the resolver or
the user's memory, sets the next state and always replies at least once.
Errors inside a processor roll the session back to that processor's
recovery state with a generic message.
"""

import copy
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import bot_messages as msg
from meal_errors import InvalidUserInput, MalformedParserOutput
from meal_models import (
    CatalogAuth,
    ClarificationType,
    ConversationState,
    Role,
    Session,
)
from meal_validation import find_draft_item
from text_utils import normalize_text, parse_number
from user_memory import rewrite_with_aliases

logger = logging.getLogger(__name__)

State = ConversationState

YES_WORDS = {"si", "sí", "s", "yes", "y", "ok", "dale"}
NO_WORDS = {"no", "n"}
MAX_SEARCH_RESULTS = 10


# ── Turn context ──────────────────────────────────────────────────────────

@dataclass
class TurnContext:
    chat_id: str
    session: Session
    text: str
    now: datetime
    auth: Optional[CatalogAuth] = None
    replies: list = field(default_factory=list)
    ended: bool = False

    def reply(self, text, fmt=None):
        self.replies.append((text, fmt))

    def end_session(self):
        """Mark the session finished; the state machine drops it after this turn."""
        self.ended = True
        self.session.state = State.IDLE


@dataclass
class Services:
    parser: object
    resolver: object
    validator: object
    memory: object = None
    image_reader: object = None


# ── Clarification replies ─────────────────────────────────────────────────

_NUMBER_PREFIX_RE = re.compile(r"^\s*\d+[.):]\s*")
_NUMBERED_RE = re.compile(r"(\d+)[.):]\s*(.+?)(?=\s+\d+[.):]|$)")
_WEIGHT_RE = re.compile(
    r"\d+(?:[.,]\d+)?\s*(?:kg|g|gr|grs|gramos?|grams?|ml|oz|onzas?|tazas?|cups?)\b",
    flags=re.IGNORECASE,
)
SIZE_KEYWORDS = [
    "extra grande", "extra large", "xl", "pequeño", "pequeña", "pequeno", "pequena",
    "chico", "chica", "mediano", "mediana", "regular", "grande", "small", "medium", "large",
]
UNIT_KEYWORDS = [
    "cucharadita", "cucharada", "tsp", "tbsp", "teaspoon", "tablespoon", "taza", "cup",
]


def _first_keyword(text, keywords):
    lowered = text.lower()
    for word in keywords:
        if re.search(r"(?<!\w)" + re.escape(word) + r"(?!\w)", lowered):
            return word
    return None


def _extract_by_type(text, clarification_type):
    if clarification_type == ClarificationType.MISSING_SIZE:
        return _first_keyword(text, SIZE_KEYWORDS)
    if clarification_type == ClarificationType.MISSING_QUANTITY:
        m = _WEIGHT_RE.search(text)
        return m.group(0) if m else None
    if clarification_type == ClarificationType.AMBIGUOUS_UNIT:
        return _first_keyword(text, UNIT_KEYWORDS)
    return None


def split_clarification_answers(text, pending):
    """Split one reply into one answer per pending clarification (None if missing).

    Tries, in order: the whole reply for a single question, one answer per
    line, "1. x 2. y" numbering, comma/semicolon separated parts, and finally
    keyword extraction per clarification type.
    """
    text = (text or "").strip()
    count = len(pending)
    if count == 0:
        return []
    if count == 1:
        return [_NUMBER_PREFIX_RE.sub("", text).strip() or None]

    lines = [line.strip() for line in text.splitlines() if line.strip()]
    if len(lines) == count:
        return [_NUMBER_PREFIX_RE.sub("", line).strip() for line in lines]

    numbered = _NUMBERED_RE.findall(" ".join(lines))
    if numbered:
        answers = [None] * count
        for number, answer in numbered:
            index = int(number) - 1
            if 0 <= index < count:
                answers[index] = answer.strip()
        if any(answers):
            return answers

    parts = [p.strip() for p in re.split(r"[,;]", text) if p.strip()]
    if len(parts) == count:
        return parts

    return [_extract_by_type(text, c.type) for c in pending]


def build_parser_context(session):
    """Meal description plus every later user turn, paired with the question it answers."""
    parts = [f"Meal description: {session.original_description}"]
    turns = session.history
    for i, turn in enumerate(turns):
        if i == 0 or turn.role != Role.USER:
            continue
        previous = turns[i - 1]
        if previous.role == Role.ASSISTANT:
            parts.append(f"Clarification question: {previous.text}\nUser answered: {turn.text}")
        else:
            parts.append(f"Additional info: {turn.text}")
    return "\n".join(parts)


_QUANTITY_RE = re.compile(r"(\d+(?:[.,]\d+)?)\s*(.*)")


def apply_answer(item, clarification, answer):
    """Fold a clarification answer straight into a draft item."""
    answer = answer.strip()
    if clarification.type == ClarificationType.ITEM_NOT_FOUND:
        item.renamed_from = item.renamed_from or clarification.original_term or item.name
        item.name = answer
    elif clarification.type == ClarificationType.MISSING_QUANTITY:
        m = _QUANTITY_RE.search(answer)
        if m:
            item.quantity = parse_number(m.group(1))
            item.unit = m.group(2).strip() or item.unit
        else:
            item.unit = answer
    else:
        item.unit = answer


# ── Base ──────────────────────────────────────────────────────────────────

class StateProcessor:
    recovery_state = State.IDLE
    error_message = msg.PROCESSING_ERROR

    def __init__(self, services):
        self.services = services

    async def process(self, ctx):
        try:
            await self.handle(ctx)
        except InvalidUserInput as exc:
            # re-prompt, state unchanged
            ctx.reply(str(exc))
        except Exception:
            logger.exception("%s failed for chat %s", type(self).__name__, ctx.chat_id)
            ctx.session.state = self.recovery_state
            ctx.reply(self.error_message)

    async def handle(self, ctx):
        raise NotImplementedError

    # Shared steps

    async def parse_session(self, ctx):
        memory = self.services.memory
        preferences = await memory.build_preference_context(ctx.chat_id) if memory else None
        return await self.services.parser.parse(build_parser_context(ctx.session), preferences)

    async def parse_draft(self, ctx):
        """Parse the session; None when the parser output is unusable."""
        try:
            return await self.parse_session(ctx)
        except MalformedParserOutput as exc:
            logger.warning("Unusable parser output for chat %s: %s", ctx.chat_id, exc)
            return None

    def accept_draft(self, ctx, draft, failure_state=State.AWAITING_MEAL_DESCRIPTION):
        """False (and the session back in `failure_state`) for a draft that cannot go on."""
        if draft is None or draft.error or not (draft.items or draft.clarifications):
            ctx.session.state = failure_state
            ctx.reply(msg.PARSE_FAILED)
            return False
        return True

    async def parse_and_continue(self, ctx, failure_state=State.AWAITING_MEAL_DESCRIPTION):
        """Parse the whole conversation and route the draft onwards."""
        ctx.session.state = State.PROCESSING
        draft = await self.parse_draft(ctx)
        if self.accept_draft(ctx, draft, failure_state):
            await self.continue_with_draft(ctx, draft)

    async def continue_with_draft(self, ctx, draft, auto_applied=False):
        session = ctx.session
        if not draft.needs_clarification:
            await self.services.validator.attempt_logging(ctx, draft)
            return

        memory = self.services.memory
        still_open = []
        learned = []
        for clarification in draft.clarifications:
            pref = None
            if memory is not None and not auto_applied:
                pref = await memory.find_clarification_preference(
                    ctx.chat_id, clarification.term, clarification.type
                )
            if pref is None:
                still_open.append(clarification)
            else:
                learned.append(f"{clarification.term}: {pref.default_answer}")

        if learned:
            logger.info("Auto-answering %d clarification(s) for chat %s", len(learned), ctx.chat_id)
            session.add_turn(Role.USER, "; ".join(learned), ctx.now)
            if not still_open:
                draft = await self.parse_draft(ctx)
                if self.accept_draft(ctx, draft):
                    await self.continue_with_draft(ctx, draft, auto_applied=True)
                return

        session.pending_request = draft
        session.pending_clarifications = still_open
        session.state = State.AWAITING_CLARIFICATION
        text = msg.format_clarifications(still_open)
        session.add_turn(Role.ASSISTANT, text, ctx.now)
        ctx.reply(text)

    async def start_meal(self, ctx, description):
        """Reset the meal, substitute known aliases and parse the description."""
        session = ctx.session
        session.history = []
        session.pending_clarifications = []
        session.pending_request = None
        session.validated_items = []
        session.pending_learnings = []
        session.detected_aliases = []
        session.clear_search()
        session.add_turn(Role.USER, description, ctx.now)
        session.original_description = description

        memory = self.services.memory
        if memory is not None:
            detected = await memory.detect_aliases(ctx.chat_id, description)
            if detected:
                rewrite = rewrite_with_aliases(normalize_text(description), detected)
                session.detected_aliases = detected
                session.original_description = rewrite.text
                logger.info("Replaced %d alias(es) for chat %s", len(detected), ctx.chat_id)
        await self.parse_and_continue(ctx)


# ── Meal flow ─────────────────────────────────────────────────────────────

class IdleProcessor(StateProcessor):

    async def handle(self, ctx):
        ctx.reply(msg.USE_START)


class ProcessingProcessor(StateProcessor):
    recovery_state = State.PROCESSING

    async def handle(self, ctx):
        ctx.reply(msg.STILL_PROCESSING)


class MealDescriptionProcessor(StateProcessor):
    recovery_state = State.AWAITING_MEAL_DESCRIPTION

    async def handle(self, ctx):
        text = ctx.text.strip()
        if not text:
            ctx.reply(msg.PARSE_FAILED)
            return
        await self.start_meal(ctx, text)


class ClarificationProcessor(StateProcessor):
    recovery_state = State.AWAITING_CLARIFICATION
    error_message = msg.CLARIFICATION_ERROR

    async def _record_patterns(self, ctx, pending, answers):
        memory = self.services.memory
        if memory is None:
            return
        for clarification, answer in zip(pending, answers):
            if answer and clarification.type != ClarificationType.ITEM_NOT_FOUND:
                await memory.record_clarification_pattern(
                    ctx.chat_id, clarification.term, clarification.type, answer
                )

    def _apply_locally(self, session, pending, answers):
        """Apply answers to the pending draft. False if a re-parse is needed instead."""
        draft = session.pending_request
        if draft is None or not pending:
            return False
        if any(c.source != "resolver" for c in pending) or not all(answers):
            return False
        targets = [find_draft_item(draft, c.item_name) for c in pending]
        if any(item is None for item in targets):
            return False
        for item, clarification, answer in zip(targets, pending, answers):
            apply_answer(item, clarification, answer)
        return True

    async def handle(self, ctx):
        session = ctx.session
        text = ctx.text.strip()
        pending = list(session.pending_clarifications)
        answers = split_clarification_answers(text, pending)
        saved_draft = copy.deepcopy(session.pending_request)
        saved_turns = len(session.history)
        session.add_turn(Role.USER, text, ctx.now)
        await self._record_patterns(ctx, pending, answers)

        try:
            if self._apply_locally(session, pending, answers):
                session.pending_clarifications = []
                session.state = State.PROCESSING
                await self.services.validator.attempt_logging(ctx, session.pending_request)
                return

            session.pending_clarifications = []
            await self.parse_and_continue(ctx)
        except Exception:
            # the same answer can be sent again
            session.pending_request = saved_draft
            session.pending_clarifications = pending
            del session.history[saved_turns:]
            raise


class ConfirmationProcessor(StateProcessor):
    recovery_state = State.AWAITING_CONFIRMATION
    error_message = msg.CHANGE_ERROR

    async def handle(self, ctx):
        session = ctx.session
        text = ctx.text.strip()
        if text.isdigit():
            number = int(text)
            if not 1 <= number <= len(session.validated_items):
                raise InvalidUserInput(msg.INVALID_NUMBER)
            await self.services.validator.search_alternatives(ctx, number - 1)
            return

        # Anything else is a correction to the whole meal
        session.add_turn(Role.USER, text, ctx.now)
        await self.parse_and_continue(ctx, failure_state=State.AWAITING_CONFIRMATION)


class FoodSearchSelectionProcessor(StateProcessor):
    recovery_state = State.AWAITING_CONFIRMATION
    error_message = msg.CHANGE_ERROR

    async def handle(self, ctx):
        session = ctx.session
        text = ctx.text.strip()
        if not (text.isdigit() and 1 <= int(text) <= len(session.search_results)):
            raise InvalidUserInput(msg.INVALID_NUMBER)
        await self.services.validator.apply_alternative(ctx, int(text) - 1)


class MemoryConfirmationProcessor(StateProcessor):
    recovery_state = State.AWAITING_MEMORY_CONFIRMATION

    async def handle(self, ctx):
        session = ctx.session
        learnings = session.pending_learnings
        answer = normalize_text((ctx.text or "").replace(",", " "))

        if answer in YES_WORDS:
            selected = list(learnings)
        elif answer in NO_WORDS:
            ctx.reply(msg.NO_PREFERENCES_SAVED)
            ctx.end_session()
            return
        elif re.fullmatch(r"\d+( \d+)*", answer):
            numbers = [int(n) for n in answer.split()]
            if not all(1 <= n <= len(learnings) for n in numbers):
                raise InvalidUserInput(msg.INVALID_MEMORY_ANSWER)
            selected = [learnings[n - 1] for n in sorted(set(numbers))]
        else:
            raise InvalidUserInput(msg.INVALID_MEMORY_ANSWER)

        for learning in selected:
            await self.services.memory.save_alias(
                ctx.chat_id, learning.term, learning.food_id, learning.food_name, learning.source_tier
            )
        ctx.reply(msg.format_memory_saved(len(selected)))
        ctx.end_session()


class OcrCorrectionProcessor(StateProcessor):
    recovery_state = State.AWAITING_OCR_CORRECTION
    error_message = msg.OCR_ERROR

    async def handle(self, ctx):
        corrections = ctx.text.strip()
        description = ctx.session.ocr_text
        if corrections:
            description += f"\n\nUser corrections: {corrections}"
        await self.start_meal(ctx, description)


# ── Preferences ───────────────────────────────────────────────────────────

class PreferenceProcessor(StateProcessor):
    """Base for the alias management menu; needs the memory service."""

    async def process(self, ctx):
        if self.services.memory is None:
            ctx.reply(msg.MEMORY_UNAVAILABLE)
            ctx.end_session()
            return
        await super().process(ctx)

    async def search(self, ctx, query):
        session = ctx.session
        candidates = await self.services.resolver.search_all(query, ctx.auth, limit=MAX_SEARCH_RESULTS)
        if not candidates:
            session.state = State.AWAITING_FOOD_SEARCH
            ctx.reply(msg.NO_SEARCH_RESULTS)
            return
        session.search_results = candidates
        session.state = State.AWAITING_FOOD_SELECTION
        heading = f"🔍 Which one should \"{session.alias_input_term}\" mean?"
        ctx.reply(msg.format_search_results(candidates, heading) + "\n\nReply with a number, or search again.")


class PreferenceActionProcessor(PreferenceProcessor):
    recovery_state = State.AWAITING_PREFERENCE_ACTION

    async def handle(self, ctx):
        session = ctx.session
        choice = ctx.text.strip()
        if choice == "1":
            session.state = State.AWAITING_ALIAS_INPUT
            ctx.reply(msg.CREATE_ALIAS_PROMPT)
        elif choice == "2":
            aliases = await self.services.memory.get_active_aliases(ctx.chat_id)
            if not aliases:
                ctx.reply(msg.NO_ALIASES_TO_DELETE)
                ctx.end_session()
                return
            session.alias_choices = aliases
            session.state = State.AWAITING_ALIAS_DELETE_CONFIRM
            ctx.reply(msg.format_alias_list(aliases))
        elif choice == "3":
            ctx.reply(msg.EXITED_PREFERENCES)
            ctx.end_session()
        else:
            raise InvalidUserInput(msg.INVALID_OPTION)


class AliasInputProcessor(PreferenceProcessor):
    recovery_state = State.AWAITING_ALIAS_INPUT

    async def handle(self, ctx):
        term = normalize_text(ctx.text)
        if not term:
            ctx.reply(msg.CREATE_ALIAS_PROMPT)
            return
        ctx.session.alias_input_term = term
        ctx.session.state = State.AWAITING_FOOD_SEARCH
        ctx.reply(f"🔍 What Cronometer food should \"{term}\" mean? Type a search term.")


class FoodSearchProcessor(PreferenceProcessor):
    recovery_state = State.AWAITING_FOOD_SEARCH
    error_message = msg.SEARCH_ERROR

    async def handle(self, ctx):
        query = ctx.text.strip()
        if not query:
            ctx.reply(msg.NO_SEARCH_RESULTS)
            return
        await self.search(ctx, query)


class FoodSelectionProcessor(PreferenceProcessor):
    recovery_state = State.AWAITING_FOOD_SELECTION
    error_message = msg.SEARCH_ERROR

    async def handle(self, ctx):
        session = ctx.session
        text = ctx.text.strip()
        if not text.isdigit():
            await self.search(ctx, text)
            return
        number = int(text)
        if not 1 <= number <= len(session.search_results):
            raise InvalidUserInput(msg.INVALID_NUMBER)
        candidate = session.search_results[number - 1]
        await self.services.memory.save_alias(
            ctx.chat_id,
            session.alias_input_term,
            candidate.food.id,
            candidate.food.name,
            candidate.tier,
            is_manual=True,
        )
        ctx.reply(msg.alias_saved(session.alias_input_term, candidate.food.name))
        ctx.end_session()


class AliasDeleteConfirmProcessor(PreferenceProcessor):
    recovery_state = State.AWAITING_ALIAS_DELETE_CONFIRM

    async def handle(self, ctx):
        session = ctx.session
        text = ctx.text.strip()
        if not (text.isdigit() and 1 <= int(text) <= len(session.alias_choices)):
            raise InvalidUserInput(msg.INVALID_NUMBER)
        alias = session.alias_choices[int(text) - 1]
        await self.services.memory.deactivate_alias(ctx.chat_id, alias.term)
        ctx.reply(msg.alias_deleted(alias.term))
        ctx.end_session()


def build_processors(services):
    """The single processor registered for every state."""
    return {
        State.IDLE: IdleProcessor(services),
        State.PROCESSING: ProcessingProcessor(services),
        State.AWAITING_MEAL_DESCRIPTION: MealDescriptionProcessor(services),
        State.AWAITING_CLARIFICATION: ClarificationProcessor(services),
        State.AWAITING_CONFIRMATION: ConfirmationProcessor(services),
        State.AWAITING_FOOD_SEARCH_SELECTION: FoodSearchSelectionProcessor(services),
        State.AWAITING_MEMORY_CONFIRMATION: MemoryConfirmationProcessor(services),
        State.AWAITING_OCR_CORRECTION: OcrCorrectionProcessor(services),
        State.AWAITING_PREFERENCE_ACTION: PreferenceActionProcessor(services),
        State.AWAITING_ALIAS_INPUT: AliasInputProcessor(services),
        State.AWAITING_FOOD_SEARCH: FoodSearchProcessor(services),
        State.AWAITING_FOOD_SELECTION: FoodSelectionProcessor(services),
        State.AWAITING_ALIAS_DELETE_CONFIRM: AliasDeleteConfirmProcessor(services),
    }
