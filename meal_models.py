"""Data types shared by the conversation engine."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from meal_errors import SessionExpired
from text_utils import format_quantity


def utcnow():
    return datetime.now(timezone.utc)


# ── Enums ─────────────────────────────────────────────────────────────────

class ConversationState(str, enum.Enum):
    IDLE = "idle"
    AWAITING_MEAL_DESCRIPTION = "awaiting_meal_description"
    AWAITING_CLARIFICATION = "awaiting_clarification"
    PROCESSING = "processing"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    AWAITING_MEMORY_CONFIRMATION = "awaiting_memory_confirmation"
    AWAITING_OCR_CORRECTION = "awaiting_ocr_correction"
    AWAITING_PREFERENCE_ACTION = "awaiting_preference_action"
    AWAITING_ALIAS_INPUT = "awaiting_alias_input"
    AWAITING_FOOD_SEARCH = "awaiting_food_search"
    AWAITING_FOOD_SELECTION = "awaiting_food_selection"
    AWAITING_FOOD_SEARCH_SELECTION = "awaiting_food_search_selection"
    AWAITING_ALIAS_DELETE_CONFIRM = "awaiting_alias_delete_confirm"


class ClarificationType(str, enum.Enum):
    MISSING_QUANTITY = "MISSING_QUANTITY"
    MISSING_SIZE = "MISSING_SIZE"
    AMBIGUOUS_UNIT = "AMBIGUOUS_UNIT"
    ITEM_NOT_FOUND = "ITEM_NOT_FOUND"

    @classmethod
    def parse(cls, raw):
        """Map a parser-supplied type name onto the enum; unknown names mean a missing quantity."""
        key = str(raw or "").strip().upper().replace(" ", "_")
        aliases = {
            "MISSING_WEIGHT": cls.MISSING_QUANTITY,
            "MISSING_AMOUNT": cls.MISSING_QUANTITY,
            "FOOD_NOT_FOUND": cls.ITEM_NOT_FOUND,
            "UNCLEAR_FOOD": cls.ITEM_NOT_FOUND,
        }
        if key in aliases:
            return aliases[key]
        try:
            return cls(key)
        except ValueError:
            return cls.MISSING_QUANTITY


class SearchTier(str, enum.Enum):
    CUSTOM = "CUSTOM"
    FAVOURITES = "FAVOURITES"
    COMMON_FOODS = "COMMON_FOODS"
    SUPPLEMENTS = "SUPPLEMENTS"
    ALL = "ALL"


# Precedence order, highest first.
SEARCH_TIERS = [
    SearchTier.CUSTOM,
    SearchTier.FAVOURITES,
    SearchTier.COMMON_FOODS,
    SearchTier.SUPPLEMENTS,
    SearchTier.ALL,
]


class Role(str, enum.Enum):
    USER = "user"
    ASSISTANT = "assistant"


# ── Conversation ──────────────────────────────────────────────────────────

@dataclass
class ConversationTurn:
    role: Role
    text: str
    at: datetime


@dataclass
class ClarificationItem:
    type: ClarificationType
    item_name: str
    question: str
    original_term: Optional[str] = None
    # "parser" answers need a re-parse; "resolver" answers are applied to the draft directly
    source: str = "parser"

    @property
    def term(self):
        return (self.original_term or self.item_name or "").strip()


@dataclass
class MealItem:
    name: str
    quantity: Optional[float] = None
    unit: str = ""
    original_term: Optional[str] = None
    # set when the user renamed an item the catalog could not find
    renamed_from: Optional[str] = None


@dataclass
class MealDraft:
    category: Optional[str] = None
    date: Optional[str] = None
    log_time: Optional[str] = None
    items: list = field(default_factory=list)
    needs_clarification: bool = False
    clarifications: list = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class OutboundMessage:
    chat_id: str
    text: str
    fmt: Optional[str] = None


# ── Catalog ───────────────────────────────────────────────────────────────

@dataclass
class Measure:
    id: int
    name: str
    grams: float


# Used when no catalog measure fits; quantity is then taken as grams.
GRAM_MEASURE = Measure(id=1074000, name="g", grams=1.0)


@dataclass
class Food:
    id: int
    name: str
    measures: list = field(default_factory=list)
    default_measure_id: Optional[int] = None
    source_tier: Optional[SearchTier] = None

    def default_measure(self):
        for m in self.measures:
            if m.id == self.default_measure_id:
                return m
        return self.measures[0] if self.measures else None


@dataclass
class SearchCandidate:
    food: Food
    tier: SearchTier
    score: float
    similarity: float
    rank: int = 0


@dataclass
class CatalogAuth:
    user_id: str
    token: str


@dataclass
class ValidatedItem:
    original_name: str
    food_name: str
    food_id: int
    quantity: float
    measure_name: str
    measure_id: int
    measure_grams: float
    is_raw_grams: bool = False
    from_alias: bool = False
    source_tier: Optional[SearchTier] = None

    @property
    def grams(self):
        if self.is_raw_grams:
            return self.quantity
        return self.quantity * self.measure_grams

    @property
    def display_quantity(self):
        if self.is_raw_grams:
            return f"{format_quantity(self.quantity)} g"
        return f"{format_quantity(self.quantity)} {self.measure_name}"


# ── User memory ───────────────────────────────────────────────────────────

@dataclass
class FoodAlias:
    user_id: str
    term: str
    food_id: int
    food_name: str
    source_tier: Optional[SearchTier] = None
    use_count: int = 1
    is_active: bool = True
    is_manual: bool = False
    created_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None


@dataclass
class ClarificationPreference:
    user_id: str
    food_term: str
    clarification_type: ClarificationType
    default_answer: str
    occurrences: int = 1
    is_confirmed: bool = False
    last_used_at: Optional[datetime] = None


@dataclass
class MeasurePreference:
    user_id: str
    food_pattern: str
    unit: str
    quantity: Optional[float] = None
    use_count: int = 1
    is_active: bool = True


@dataclass
class PendingLearning:
    term: str
    food_id: int
    food_name: str
    source_tier: Optional[SearchTier] = None


@dataclass
class DetectedAlias:
    start: int
    end: int
    term: str
    alias: FoodAlias

    @property
    def length(self):
        return self.end - self.start

    def overlaps(self, other):
        return self.start < other.end and other.start < self.end


@dataclass
class AliasRewrite:
    text: str
    # (start, end) offsets of substituted canonical names in `text`
    spans: list = field(default_factory=list)


# ── Session ───────────────────────────────────────────────────────────────

@dataclass
class Session:
    chat_id: str
    started_at: datetime
    last_activity_at: datetime
    state: ConversationState = ConversationState.IDLE
    history: list = field(default_factory=list)
    original_description: str = ""
    pending_clarifications: list = field(default_factory=list)
    pending_request: Optional[MealDraft] = None
    validated_items: list = field(default_factory=list)
    pending_learnings: list = field(default_factory=list)
    detected_aliases: list = field(default_factory=list)
    search_results: list = field(default_factory=list)
    search_item_index: Optional[int] = None
    alias_input_term: str = ""
    alias_choices: list = field(default_factory=list)
    ocr_text: str = ""

    def is_expired(self, now, timeout):
        return now - self.last_activity_at > timeout

    def ensure_active(self, now, timeout):
        if self.is_expired(now, timeout):
            raise SessionExpired(f"Session for {self.chat_id} idle since {self.last_activity_at.isoformat()}")

    def touch(self, now):
        self.last_activity_at = now

    def add_turn(self, role, text, now):
        self.history.append(ConversationTurn(role=Role(role), text=text, at=now))

    def clear_search(self):
        self.search_results = []
        self.search_item_index = None
