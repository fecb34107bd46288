"""
Validation orchestrator: parsed meal items -> catalog foods and measures.

Takes what the parser produced, resolves every item (aliases first, then the
tiered catalog search), decides whether the user must be asked something,
and writes the confirmed meal to Cronometer.
"""

import logging
from dataclasses import dataclass, field

import bot_messages as msg
from cronometer import build_servings
from food_resolver import is_size_ambiguous, match_measure
from meal_errors import PermanentNotFound, TransientRemoteFailure
from meal_models import (
    ClarificationItem,
    ClarificationType,
    ConversationState,
    PendingLearning,
    Role,
    ValidatedItem,
)
from text_utils import contains_words, normalize_text
from user_memory import match_detected_alias

logger = logging.getLogger(__name__)

MAX_ALTERNATIVES = 10


@dataclass
class ValidationOutcome:
    validated: list = field(default_factory=list)
    not_found: list = field(default_factory=list)
    # MealItems whose food comes in several sizes and no usable size was given
    size_ambiguous: list = field(default_factory=list)
    # PendingLearnings for renamed items that resolved
    learnings: list = field(default_factory=list)


def _validated_from(item, food, match, quantity, from_alias=False):
    return ValidatedItem(
        original_name=item.name,
        food_name=food.name,
        food_id=food.id,
        quantity=quantity,
        measure_name="g" if match.is_raw_grams else match.measure.name,
        measure_id=match.measure.id,
        measure_grams=match.measure.grams,
        is_raw_grams=match.is_raw_grams,
        from_alias=from_alias,
        source_tier=food.source_tier,
    )


def find_draft_item(draft, name):
    """Locate a draft item by its parsed name or the user's original term."""
    if draft is None:
        return None
    key = (name or "").strip().lower()
    for item in draft.items:
        if item.name.strip().lower() == key:
            return item
    for item in draft.items:
        if (item.original_term or "").strip().lower() == key:
            return item
    return None


def _user_term(draft, name):
    item = find_draft_item(draft, name)
    if item is not None and item.original_term:
        return item.original_term
    return name


class MealValidator:

    def __init__(self, resolver, catalog, memory=None):
        self.resolver = resolver
        self.catalog = catalog
        self.memory = memory

    # ── Resolution ────────────────────────────────────────────────────────

    async def _food_with_measures(self, food, auth):
        if food.measures:
            return food
        detailed = await self.resolver.get_food(food.id, auth)
        detailed.source_tier = detailed.source_tier or food.source_tier
        return detailed

    async def _from_alias(self, item, detected, auth, lone_item=False):
        match = match_detected_alias(item.name, detected)
        if match is None and item.original_term:
            match = match_detected_alias(item.original_term, detected)
        # a one-item meal whose name the parser translated still belongs to the only alias
        if match is None and lone_item and len(detected) == 1:
            match = detected[0]
        if match is None:
            return None
        try:
            food = await self.resolver.get_food(match.alias.food_id, auth)
        except PermanentNotFound:
            logger.warning("Alias %r points to missing food %s", match.term, match.alias.food_id)
            return None
        food.source_tier = food.source_tier or match.alias.source_tier
        if self.memory is not None:
            await self.memory.increment_alias_usage(match.alias)
        return food

    async def validate_items(self, items, user_id, auth, detected_aliases=(), original_text=None):
        outcome = ValidationOutcome()
        items = list(items)
        detected = list(detected_aliases)
        if original_text:
            # aliases detected in an earlier description no longer apply after a rewrite
            text = normalize_text(original_text)
            detected = [
                d for d in detected
                if contains_words(text, d.term) or contains_words(text, normalize_text(d.alias.food_name))
            ]
        lone_item = len(items) == 1
        for item in items:
            unit = item.unit
            quantity = item.quantity
            if not unit and self.memory is not None:
                pref = await self.memory.find_measure_preference(user_id, item.name)
                if pref is not None:
                    unit = pref.unit
                    quantity = quantity if quantity is not None else pref.quantity

            food = await self._from_alias(item, detected, auth, lone_item)
            from_alias = food is not None
            if food is None:
                result = await self.resolver.resolve(item.name, auth)
                if not result.found:
                    outcome.not_found.append(item.name)
                    continue
                food = result.best.food
                food.source_tier = result.best.tier
                food = await self._food_with_measures(food, auth)

            match = match_measure(unit, food.measures, food.default_measure())
            if is_size_ambiguous(match, food.measures):
                outcome.size_ambiguous.append(item)
                continue
            validated = _validated_from(item, food, match, quantity if quantity is not None else 1.0, from_alias)
            outcome.validated.append(validated)
            if item.renamed_from and not from_alias:
                outcome.learnings.append(PendingLearning(
                    term=item.renamed_from, food_id=food.id, food_name=food.name, source_tier=food.source_tier,
                ))
            logger.info("Resolved %r -> %s (%s, %s)", item.name, food.name,
                        validated.display_quantity, validated.source_tier)
        return outcome

    # ── Orchestration ─────────────────────────────────────────────────────

    async def _apply_size_preferences(self, user_id, items):
        """Fill sizes the user always answers the same way. Returns the items still open."""
        if self.memory is None:
            return list(items)
        still_open = []
        for item in items:
            term = item.original_term or item.name
            pref = await self.memory.find_clarification_preference(user_id, term, ClarificationType.MISSING_SIZE)
            if pref is None:
                still_open.append(item)
            else:
                logger.info("Applying learned size %r for %r", pref.default_answer, term)
                item.unit = pref.default_answer
        return still_open

    def _ask(self, ctx, clarifications, lead=None):
        session = ctx.session
        session.pending_clarifications = clarifications
        session.state = ConversationState.AWAITING_CLARIFICATION
        text = msg.format_clarifications(clarifications)
        if lead:
            text = f"{lead}\n\n{text}"
        session.add_turn(Role.ASSISTANT, text, ctx.now)
        ctx.reply(text)

    async def attempt_logging(self, ctx, draft, _auto_applied=False):
        """Validate the draft and move the session to clarification or confirmation."""
        session = ctx.session
        if draft is None or not draft.items:
            logger.warning("Nothing to validate for chat %s", ctx.chat_id)
            session.state = ConversationState.AWAITING_MEAL_DESCRIPTION
            ctx.reply(msg.PARSE_FAILED)
            return
        session.pending_request = draft
        outcome = await self.validate_items(
            draft.items, ctx.chat_id, ctx.auth, session.detected_aliases, session.original_description,
        )

        if outcome.not_found:
            clarifications = [
                ClarificationItem(
                    type=ClarificationType.ITEM_NOT_FOUND,
                    item_name=name,
                    question=msg.not_found_question(name),
                    original_term=_user_term(draft, name),
                    source="resolver",
                )
                for name in outcome.not_found
            ]
            self._ask(ctx, clarifications, lead=msg.format_not_found(outcome.not_found))
            return

        if outcome.size_ambiguous:
            still_open = outcome.size_ambiguous
            if not _auto_applied:
                still_open = await self._apply_size_preferences(ctx.chat_id, outcome.size_ambiguous)
                if not still_open:
                    await self.attempt_logging(ctx, draft, _auto_applied=True)
                    return
            clarifications = [
                ClarificationItem(
                    type=ClarificationType.MISSING_SIZE,
                    item_name=item.name,
                    question=msg.size_question(item.original_term or item.name),
                    original_term=item.original_term or item.name,
                    source="resolver",
                )
                for item in still_open
            ]
            self._ask(ctx, clarifications)
            return

        session.validated_items = outcome.validated
        for learning in outcome.learnings:
            self.add_learning(session, learning.term, learning.food_id, learning.food_name, learning.source_tier)
        session.pending_clarifications = []
        self.show_confirmation(ctx)

    def show_confirmation(self, ctx):
        session = ctx.session
        draft = session.pending_request
        text = msg.format_confirmation(session.validated_items, draft.category if draft else None)
        session.state = ConversationState.AWAITING_CONFIRMATION
        session.add_turn(Role.ASSISTANT, text, ctx.now)
        ctx.reply(text)

    # ── Save ──────────────────────────────────────────────────────────────

    async def save_meal(self, ctx):
        """Write the confirmed items. Returns True when Cronometer accepted them."""
        session = ctx.session
        draft = session.pending_request
        servings = build_servings(
            session.validated_items,
            draft.category if draft else None,
            draft.date if draft else None,
            ctx.auth.user_id,
            draft.log_time if draft else None,
        )
        try:
            ok = await self.catalog.write_multi_serving(servings, ctx.auth)
        except TransientRemoteFailure:
            logger.exception("Saving meal for %s failed", ctx.chat_id)
            ok = False

        if not ok:
            session.state = ConversationState.AWAITING_CONFIRMATION
            ctx.reply(msg.SAVE_FAILED)
            return False

        ctx.reply(msg.SAVED)
        if self.memory is not None and session.pending_learnings:
            session.state = ConversationState.AWAITING_MEMORY_CONFIRMATION
            ctx.reply(msg.format_learnings(session.pending_learnings))
        else:
            ctx.end_session()
        return True

    # ── Alternatives ──────────────────────────────────────────────────────

    async def search_alternatives(self, ctx, index):
        session = ctx.session
        item = session.validated_items[index]
        candidates = await self.resolver.search_all(item.original_name, ctx.auth, limit=MAX_ALTERNATIVES)
        if not candidates:
            ctx.reply(msg.NO_ALTERNATIVES)
            return
        session.search_results = candidates
        session.search_item_index = index
        session.state = ConversationState.AWAITING_FOOD_SEARCH_SELECTION
        ctx.reply(msg.format_alternatives(item, candidates))

    async def apply_alternative(self, ctx, choice):
        """Swap the selected item's food for search result `choice` (0-based)."""
        session = ctx.session
        candidate = session.search_results[choice]
        index = session.search_item_index
        old = session.validated_items[index]

        food = candidate.food
        food.source_tier = candidate.tier
        food = await self._food_with_measures(food, ctx.auth)
        unit = "g" if old.is_raw_grams else old.measure_name
        match = match_measure(unit, food.measures, food.default_measure())
        if match.is_raw_grams and not old.is_raw_grams:
            # the new food lacks the old measure; keep the same weight
            quantity = old.grams
        else:
            quantity = old.quantity

        updated = ValidatedItem(
            original_name=old.original_name,
            food_name=food.name,
            food_id=food.id,
            quantity=quantity,
            measure_name="g" if match.is_raw_grams else match.measure.name,
            measure_id=match.measure.id,
            measure_grams=match.measure.grams,
            is_raw_grams=match.is_raw_grams,
            source_tier=candidate.tier,
        )
        session.validated_items[index] = updated
        self.add_learning(session, old.original_name, food.id, food.name, candidate.tier)
        session.clear_search()
        self.show_confirmation(ctx)

    @staticmethod
    def add_learning(session, term, food_id, food_name, tier=None):
        key = (term or "").strip().lower()
        session.pending_learnings = [l for l in session.pending_learnings if l.term.lower() != key]
        session.pending_learnings.append(PendingLearning(
            term=term.strip(), food_id=food_id, food_name=food_name, source_tier=tier,
        ))
