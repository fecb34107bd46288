import pytest

import bot_messages as msg
from fakes import AUTH, FakeParser, breakfast_draft
from food_resolver import FoodResolver
from meal_errors import MalformedParserOutput, TransientRemoteFailure
from meal_models import (
    ClarificationItem,
    ClarificationType,
    ConversationState,
    MealDraft,
    MealItem,
    PendingLearning,
    Role,
    Session,
)
from meal_validation import MealValidator
from state_processors import (
    ClarificationProcessor,
    ConfirmationProcessor,
    MealDescriptionProcessor,
    MemoryConfirmationProcessor,
    Services,
    TurnContext,
    apply_answer,
    build_parser_context,
    build_processors,
    split_clarification_answers,
)

State = ConversationState


def question(kind, name="Egg", source="parser"):
    return ClarificationItem(type=kind, item_name=name, question="?", source=source)


def make_services(catalog, parser, memory=None):
    resolver = FoodResolver(catalog)
    return Services(
        parser=parser,
        resolver=resolver,
        validator=MealValidator(resolver, catalog, memory),
        memory=memory,
    )


def make_ctx(clock, text, state, chat_id="u1"):
    now = clock()
    session = Session(chat_id=chat_id, started_at=now, last_activity_at=now, state=state)
    return TurnContext(chat_id=chat_id, session=session, text=text, now=now, auth=AUTH)


# ── Splitting answers ──

SIZE_AND_WEIGHT = [question(ClarificationType.MISSING_SIZE), question(ClarificationType.MISSING_QUANTITY, "Rice")]


def test_single_question_takes_the_whole_reply():
    assert split_clarification_answers("1. grandes", [question(ClarificationType.MISSING_SIZE)]) == ["grandes"]


def test_one_answer_per_line():
    assert split_clarification_answers("grande\n200 g", SIZE_AND_WEIGHT) == ["grande", "200 g"]


def test_numbered_answers_on_one_line():
    assert split_clarification_answers("1. grande 2. 200g", SIZE_AND_WEIGHT) == ["grande", "200g"]


def test_comma_separated_answers():
    assert split_clarification_answers("grande, 200 g", SIZE_AND_WEIGHT) == ["grande", "200 g"]


def test_keywords_extracted_from_free_text():
    answers = split_clarification_answers("los huevos grande y 150 gramos de arroz", SIZE_AND_WEIGHT)

    assert answers == ["grande", "150 gramos"]


def test_unanswered_questions_come_back_as_none():
    assert split_clarification_answers("no se", SIZE_AND_WEIGHT) == [None, None]


# ── Parser context ──

def test_parser_context_pairs_answers_with_questions(clock):
    now = clock()
    session = Session(chat_id="u1", started_at=now, last_activity_at=now)
    session.original_description = "2 huevos"
    session.add_turn(Role.USER, "2 huevos", now)
    session.add_turn(Role.ASSISTANT, "¿De qué tamaño?", now)
    session.add_turn(Role.USER, "grandes", now)
    session.add_turn(Role.USER, "y un café", now)

    context = build_parser_context(session)

    assert context == (
        "Meal description: 2 huevos\n"
        "Clarification question: ¿De qué tamaño?\nUser answered: grandes\n"
        "Additional info: y un café"
    )


# ── Applying answers to a draft ──

def test_not_found_answer_renames_the_item():
    item = MealItem(name="Carne mechada", original_term="carne mechada")
    clarification = ClarificationItem(
        type=ClarificationType.ITEM_NOT_FOUND, item_name="Carne mechada", question="?",
        original_term="carne mechada", source="resolver",
    )

    apply_answer(item, clarification, " Shredded beef ")

    assert item.name == "Shredded beef"
    assert item.renamed_from == "carne mechada"


def test_quantity_answer_sets_number_and_unit():
    item = MealItem(name="Rice", unit="")

    apply_answer(item, question(ClarificationType.MISSING_QUANTITY, "Rice"), "150 g")

    assert (item.quantity, item.unit) == (150.0, "g")


def test_size_answer_becomes_the_unit():
    item = MealItem(name="Egg", quantity=2)

    apply_answer(item, question(ClarificationType.MISSING_SIZE), "mediano")

    assert item.unit == "mediano"


# ── Processors ──

def test_every_state_has_a_processor():
    processors = build_processors(Services(parser=None, resolver=None, validator=None))

    assert set(processors) == set(ConversationState)


@pytest.mark.asyncio
async def test_unusable_parser_output_asks_again(catalog, clock):
    ctx = make_ctx(clock, "blah", State.AWAITING_MEAL_DESCRIPTION)
    processor = MealDescriptionProcessor(make_services(catalog, FakeParser(MalformedParserOutput("bad"))))

    await processor.process(ctx)

    assert ctx.session.state == State.AWAITING_MEAL_DESCRIPTION
    assert ctx.replies == [(msg.PARSE_FAILED, None)]


@pytest.mark.asyncio
async def test_parser_error_answer_asks_again(catalog, clock):
    ctx = make_ctx(clock, "hola", State.AWAITING_MEAL_DESCRIPTION)
    parser = FakeParser(MealDraft(error="No food information could be extracted."))

    await MealDescriptionProcessor(make_services(catalog, parser)).process(ctx)

    assert ctx.session.state == State.AWAITING_MEAL_DESCRIPTION
    assert ctx.replies == [(msg.PARSE_FAILED, None)]


@pytest.mark.asyncio
async def test_unexpected_error_rolls_back_to_recovery_state(catalog, clock):
    ctx = make_ctx(clock, "mejor 3 huevos", State.AWAITING_CONFIRMATION)
    processor = ConfirmationProcessor(make_services(catalog, FakeParser(RuntimeError("boom"))))

    await processor.process(ctx)

    assert ctx.session.state == State.AWAITING_CONFIRMATION
    assert ctx.replies == [(msg.CHANGE_ERROR, None)]


@pytest.mark.asyncio
async def test_confirmed_clarification_is_answered_automatically(catalog, clock, memory):
    for _ in range(2):
        await memory.record_clarification_pattern("u1", "huevos", ClarificationType.MISSING_SIZE, "grande")
    asks = breakfast_draft()
    asks.needs_clarification = True
    asks.clarifications = [ClarificationItem(
        type=ClarificationType.MISSING_SIZE, item_name="Egg", question="¿Tamaño?", original_term="huevos",
    )]
    answered = breakfast_draft()
    answered.items[0].unit = "large"
    parser = FakeParser(asks, answered)
    ctx = make_ctx(clock, "2 huevos y 100g de arroz", State.AWAITING_MEAL_DESCRIPTION)

    await MealDescriptionProcessor(make_services(catalog, parser, memory)).process(ctx)

    assert ctx.session.state == State.AWAITING_CONFIRMATION
    assert len(parser.calls) == 2
    assert "Additional info: huevos: grande" in parser.calls[1][0]


@pytest.mark.asyncio
async def test_unusable_reparse_after_auto_answer_asks_again(catalog, clock, memory):
    for _ in range(2):
        await memory.record_clarification_pattern("u1", "huevos", ClarificationType.MISSING_SIZE, "grande")
    asks = breakfast_draft()
    asks.needs_clarification = True
    asks.clarifications = [ClarificationItem(
        type=ClarificationType.MISSING_SIZE, item_name="Egg", question="¿Tamaño?", original_term="huevos",
    )]
    parser = FakeParser(asks, MealDraft(error="No food information could be extracted."))
    ctx = make_ctx(clock, "2 huevos y 100g de arroz", State.AWAITING_MEAL_DESCRIPTION)

    await MealDescriptionProcessor(make_services(catalog, parser, memory)).process(ctx)

    assert ctx.session.state == State.AWAITING_MEAL_DESCRIPTION
    assert ctx.session.validated_items == []
    assert ctx.replies == [(msg.PARSE_FAILED, None)]


@pytest.mark.asyncio
async def test_draft_without_items_is_not_confirmed(catalog, clock):
    ctx = make_ctx(clock, "", State.PROCESSING)

    await make_services(catalog, FakeParser(None)).validator.attempt_logging(ctx, MealDraft(items=[]))

    assert ctx.session.state == State.AWAITING_MEAL_DESCRIPTION
    assert ctx.replies == [(msg.PARSE_FAILED, None)]


@pytest.mark.asyncio
async def test_failed_lookup_keeps_the_question_for_a_retry(catalog, clock):
    ctx = make_ctx(clock, "arepa", State.AWAITING_CLARIFICATION)
    ctx.session.pending_request = MealDraft(items=[MealItem(name="Mystery", quantity=1, original_term="misterio")])
    ctx.session.pending_clarifications = [question(ClarificationType.ITEM_NOT_FOUND, "Mystery", source="resolver")]
    catalog.search_error = TransientRemoteFailure("catalog down")
    processor = ClarificationProcessor(make_services(catalog, FakeParser(None)))

    await processor.process(ctx)

    assert ctx.session.state == State.AWAITING_CLARIFICATION
    assert ctx.replies == [(msg.CLARIFICATION_ERROR, None)]
    assert [c.item_name for c in ctx.session.pending_clarifications] == ["Mystery"]
    assert ctx.session.pending_request.items[0].name == "Mystery"
    assert ctx.session.history == []

    ctx.replies = []
    await processor.process(ctx)

    assert ctx.session.state == State.AWAITING_CONFIRMATION
    [item] = ctx.session.validated_items
    assert item.food_id == 300
    assert ctx.session.pending_learnings[0].term == "Mystery"


def awaiting_memory(clock, *terms):
    ctx = make_ctx(clock, "", State.AWAITING_MEMORY_CONFIRMATION)
    ctx.session.pending_learnings = [
        PendingLearning(term=t, food_id=300 + i, food_name=f"Food {i}") for i, t in enumerate(terms)
    ]
    return ctx


@pytest.mark.asyncio
async def test_memory_confirmation_by_numbers(catalog, clock, memory):
    ctx = awaiting_memory(clock, "arepita", "cafecito", "pancito")
    ctx.text = "1, 3"

    await MemoryConfirmationProcessor(make_services(catalog, FakeParser(None), memory)).process(ctx)

    assert ctx.ended
    assert (await memory.find_alias("u1", "arepita")).food_id == 300
    assert await memory.find_alias("u1", "cafecito") is None
    assert (await memory.find_alias("u1", "pancito")).food_id == 302
    assert ctx.replies == [(msg.format_memory_saved(2), None)]


@pytest.mark.asyncio
async def test_memory_confirmation_no_saves_nothing(catalog, clock, memory):
    ctx = awaiting_memory(clock, "arepita")
    ctx.text = "No"

    await MemoryConfirmationProcessor(make_services(catalog, FakeParser(None), memory)).process(ctx)

    assert ctx.ended
    assert await memory.get_active_aliases("u1") == []


@pytest.mark.asyncio
async def test_memory_confirmation_rejects_out_of_range_numbers(catalog, clock, memory):
    ctx = awaiting_memory(clock, "arepita")
    ctx.text = "4"

    await MemoryConfirmationProcessor(make_services(catalog, FakeParser(None), memory)).process(ctx)

    assert not ctx.ended
    assert ctx.session.state == State.AWAITING_MEMORY_CONFIRMATION
    assert ctx.replies == [(msg.INVALID_MEMORY_ANSWER, None)]
