import pytest

import bot_messages as msg
from fakes import AUTH, FakeCatalog, breakfast_draft, egg, rice
from food_resolver import FoodResolver
from meal_errors import TransientRemoteFailure
from meal_models import (
    ClarificationType,
    ConversationState,
    Food,
    MealDraft,
    MealItem,
    Measure,
    SearchTier,
    Session,
)
from meal_validation import MealValidator, find_draft_item
from state_processors import TurnContext


def make_ctx(clock, chat_id="u1"):
    now = clock()
    session = Session(chat_id=chat_id, started_at=now, last_activity_at=now)
    return TurnContext(chat_id=chat_id, session=session, text="", now=now, auth=AUTH)


def validator_for(catalog, memory=None):
    return MealValidator(FoodResolver(catalog), catalog, memory)


def texts(ctx):
    return [text for text, _ in ctx.replies]


# ── Not found ──

@pytest.mark.asyncio
async def test_unknown_items_become_not_found_questions(catalog, clock):
    ctx = make_ctx(clock)
    draft = MealDraft(items=[
        MealItem(name="Egg", quantity=2, unit="large", original_term="huevos"),
        MealItem(name="Dragon jam", quantity=1, original_term="mermelada de dragon"),
    ])

    await validator_for(catalog).attempt_logging(ctx, draft)

    session = ctx.session
    assert session.state == ConversationState.AWAITING_CLARIFICATION
    [question] = session.pending_clarifications
    assert question.type == ClarificationType.ITEM_NOT_FOUND
    assert question.item_name == "Dragon jam"
    assert question.original_term == "mermelada de dragon"
    assert question.source == "resolver"
    assert "Dragon jam" in texts(ctx)[0]
    assert session.validated_items == []


# ── Sizes ──

@pytest.mark.asyncio
async def test_unit_less_egg_asks_for_size(catalog, clock):
    ctx = make_ctx(clock)

    await validator_for(catalog).attempt_logging(ctx, breakfast_draft())

    [question] = ctx.session.pending_clarifications
    assert question.type == ClarificationType.MISSING_SIZE
    assert question.term == "huevos"
    assert ctx.session.state == ConversationState.AWAITING_CLARIFICATION


@pytest.mark.asyncio
async def test_learned_size_is_applied_without_asking(catalog, clock, memory):
    for _ in range(2):
        await memory.record_clarification_pattern("u1", "huevos", ClarificationType.MISSING_SIZE, "grande")
    ctx = make_ctx(clock)

    await validator_for(catalog, memory).attempt_logging(ctx, breakfast_draft())

    assert ctx.session.state == ConversationState.AWAITING_CONFIRMATION
    eggs, rice_item = ctx.session.validated_items
    assert eggs.measure_name == "large"
    assert eggs.grams == 100
    assert rice_item.grams == 100


# ── Aliases and preferences ──

@pytest.mark.asyncio
async def test_detected_alias_skips_the_catalog_search(catalog, clock, memory):
    await memory.save_alias("u1", "arepita", 300, "Arepa de maiz", SearchTier.CUSTOM)
    ctx = make_ctx(clock)
    ctx.session.detected_aliases = await memory.detect_aliases("u1", "2 arepitas y 1 arepita")
    draft = MealDraft(items=[MealItem(name="Arepa de maiz", quantity=1, original_term="arepita")])

    await validator_for(catalog, memory).attempt_logging(ctx, draft)

    [item] = ctx.session.validated_items
    assert item.food_id == 300
    assert item.from_alias
    assert item.measure_name == "unit"
    assert catalog.search_calls == []
    assert (await memory.find_alias("u1", "arepita")).use_count == 2


@pytest.mark.asyncio
async def test_lone_translated_item_takes_the_only_alias(catalog, clock, memory):
    await memory.save_alias("u1", "arepita", 300, "Arepa de maiz", SearchTier.CUSTOM)
    detected = await memory.detect_aliases("u1", "1 arepita")
    items = [MealItem(name="Corn cake", quantity=1)]

    outcome = await validator_for(catalog, memory).validate_items(
        items, "u1", AUTH, detected, "1 arepa de maiz",
    )

    [item] = outcome.validated
    assert item.food_id == 300
    assert item.from_alias
    assert catalog.search_calls == []


@pytest.mark.asyncio
async def test_alias_missing_from_description_is_ignored(catalog, clock, memory):
    await memory.save_alias("u1", "arepita", 300, "Arepa de maiz", SearchTier.CUSTOM)
    detected = await memory.detect_aliases("u1", "1 arepita")
    items = [MealItem(name="Arepa", quantity=1, original_term="arepita")]

    outcome = await validator_for(catalog, memory).validate_items(
        items, "u1", AUTH, detected, "una arepa",
    )

    [item] = outcome.validated
    assert item.food_id == 300
    assert not item.from_alias
    assert catalog.search_calls != []


@pytest.mark.asyncio
async def test_measure_preference_fills_missing_unit(catalog, clock, memory):
    await memory.save_measure_preference("u1", "rice", "g", 150)
    draft = MealDraft(items=[MealItem(name="Rice")])

    outcome = await validator_for(catalog, memory).validate_items(draft.items, "u1", AUTH)

    [item] = outcome.validated
    assert item.measure_name == "g"
    assert item.quantity == 150
    assert item.grams == 150


@pytest.mark.asyncio
async def test_renamed_item_becomes_pending_learning(catalog, clock):
    ctx = make_ctx(clock)
    draft = MealDraft(items=[MealItem(name="arepa", quantity=1, renamed_from="arepita")])

    await validator_for(catalog).attempt_logging(ctx, draft)

    [learning] = ctx.session.pending_learnings
    assert learning.term == "arepita"
    assert learning.food_id == 300
    assert learning.source_tier == SearchTier.CUSTOM


# ── Save ──

async def confirmed(catalog, clock, memory=None):
    ctx = make_ctx(clock)
    draft = breakfast_draft()
    draft.items[0].unit = "large"
    validator = validator_for(catalog, memory)
    await validator.attempt_logging(ctx, draft)
    assert ctx.session.state == ConversationState.AWAITING_CONFIRMATION
    ctx.replies.clear()
    return validator, ctx


@pytest.mark.asyncio
async def test_save_writes_one_serving_per_item(catalog, clock):
    validator, ctx = await confirmed(catalog, clock)

    assert await validator.save_meal(ctx) is True

    [servings] = catalog.written
    assert [s["foodId"] for s in servings] == [100, 200]
    assert [s["grams"] for s in servings] == [100, 100]
    assert servings[0]["order"] == 65537
    assert servings[0]["day"] == "2025-09-21"
    assert servings[0]["time"] == "08:30:00"
    assert servings[0]["userId"] == 42
    assert ctx.ended
    assert texts(ctx) == [msg.SAVED]


@pytest.mark.asyncio
async def test_rejected_save_keeps_the_meal(catalog, clock):
    validator, ctx = await confirmed(catalog, clock)
    catalog.write_ok = False

    assert await validator.save_meal(ctx) is False

    assert ctx.session.state == ConversationState.AWAITING_CONFIRMATION
    assert len(ctx.session.validated_items) == 2
    assert not ctx.ended
    assert texts(ctx) == [msg.SAVE_FAILED]


@pytest.mark.asyncio
async def test_transient_save_error_keeps_the_meal(catalog, clock):
    validator, ctx = await confirmed(catalog, clock)
    catalog.write_error = TransientRemoteFailure("timeout")

    assert await validator.save_meal(ctx) is False
    assert ctx.session.state == ConversationState.AWAITING_CONFIRMATION


@pytest.mark.asyncio
async def test_save_with_learnings_asks_what_to_remember(catalog, clock, memory):
    validator, ctx = await confirmed(catalog, clock, memory)
    validator.add_learning(ctx.session, "arepita", 300, "Arepa de maiz")

    await validator.save_meal(ctx)

    assert ctx.session.state == ConversationState.AWAITING_MEMORY_CONFIRMATION
    assert not ctx.ended
    assert "arepita" in texts(ctx)[-1]


# ── Alternatives ──

@pytest.mark.asyncio
async def test_picking_an_alternative_keeps_the_weight(clock):
    brown = Food(id=201, name="Rice, brown", measures=[Measure(id=9, name="cup", grams=195.0)], default_measure_id=9)
    catalog = FakeCatalog({
        ("egg", SearchTier.COMMON_FOODS): [egg()],
        ("rice", SearchTier.COMMON_FOODS): [rice()],
        ("rice", SearchTier.ALL): [rice(), brown],
    })
    validator, ctx = await confirmed(catalog, clock)

    await validator.search_alternatives(ctx, 1)
    assert ctx.session.state == ConversationState.AWAITING_FOOD_SEARCH_SELECTION
    assert [c.food.id for c in ctx.session.search_results] == [200, 201]

    await validator.apply_alternative(ctx, 1)

    item = ctx.session.validated_items[1]
    assert item.food_id == 201
    assert item.display_quantity == "100 g"
    assert item.grams == 100
    assert ctx.session.state == ConversationState.AWAITING_CONFIRMATION
    assert ctx.session.search_results == []
    [learning] = ctx.session.pending_learnings
    assert (learning.term, learning.food_id) == ("Rice", 201)


def test_find_draft_item_by_name_or_original_term():
    draft = breakfast_draft()

    assert find_draft_item(draft, "egg").name == "Egg"
    assert find_draft_item(draft, "arroz").name == "Rice"
    assert find_draft_item(draft, "pan") is None
