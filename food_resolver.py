"""
Food and measure resolution.

Free-text item names are searched tab by tab (custom foods first, the whole
catalog last) and the first tab with results wins. Results are scored with a
mix of text similarity, tab priority, catalog rank and exact-match bonuses.
Units are matched onto the food's measures, falling back to raw grams.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from difflib import SequenceMatcher
from typing import Optional

from meal_errors import PermanentNotFound
from meal_models import GRAM_MEASURE, SEARCH_TIERS, Measure, SearchCandidate, SearchTier
from text_utils import collapse_spaces, contains_words, normalize_search_query, strip_accents

logger = logging.getLogger(__name__)

TIER_WEIGHTS = {
    SearchTier.CUSTOM: 3.0,
    SearchTier.FAVOURITES: 2.5,
    SearchTier.COMMON_FOODS: 1.0,
    SearchTier.SUPPLEMENTS: 0.5,
    SearchTier.ALL: 0.4,
}

RESULTS_PER_TIER = 5
MIN_SCORE = 0.2

EXACT_BONUS = 10.0
NORMALIZED_EXACT_BONUS = 5.0
STARTS_WITH_BONUS = 2.0
CONTAINS_BONUS = 1.0
# First catalog result gets the full weight, later ones a decreasing share
RELEVANCE_WEIGHT = 0.5


# ── Scoring ───────────────────────────────────────────────────────────────

def similarity(query, name):
    q = (query or "").lower().strip()
    n = (name or "").lower().strip()
    if not q or not n:
        return 0.0
    raw = SequenceMatcher(None, q, n).ratio()
    nq, nn = normalize_search_query(q), normalize_search_query(n)
    normalized = SequenceMatcher(None, nq, nn).ratio() if nq and nn else 0.0
    return max(raw, normalized)


def score_food(query, food, tier, rank=0):
    q = (query or "").lower().strip()
    name = (food.name or "").lower().strip()
    sim = similarity(q, name)

    score = sim * TIER_WEIGHTS.get(tier, 0.4)
    score += RELEVANCE_WEIGHT / (rank + 1)
    if name == q:
        score += EXACT_BONUS
    elif normalize_search_query(name) == normalize_search_query(q):
        score += NORMALIZED_EXACT_BONUS
    if q and name.startswith(q):
        score += STARTS_WITH_BONUS
    elif q and q in name:
        score += CONTAINS_BONUS
    return SearchCandidate(food=food, tier=tier, score=score, similarity=sim, rank=rank)


def rank_candidates(query, foods_by_tier):
    """Score every (tier, foods) group; best first, ties broken by tier precedence."""
    candidates = []
    for tier, foods in foods_by_tier.items():
        for rank, food in enumerate(foods):
            candidates.append(score_food(query, food, tier, rank))
    candidates.sort(key=lambda c: (-c.score, SEARCH_TIERS.index(c.tier), -c.similarity))
    return candidates


# ── Measures ──────────────────────────────────────────────────────────────

UNIT_SYNONYMS = {
    "g": ["g", "gr", "grs", "gram", "grams", "gramo", "gramos", "gm", "gms"],
    "ml": ["ml", "mililitro", "mililitros", "milliliter", "milliliters", "millilitre"],
    "oz": ["oz", "onza", "onzas", "ounce", "ounces"],
    "cup": ["cup", "cups", "taza", "tazas"],
    "tbsp": ["tbsp", "tablespoon", "tablespoons", "cucharada", "cucharadas", "cda"],
    "tsp": ["tsp", "teaspoon", "teaspoons", "cucharadita", "cucharaditas", "cdta"],
    "slice": ["slice", "slices", "rebanada", "rebanadas", "tajada", "tajadas", "lonja"],
    "small": ["small", "pequeno", "pequena", "pequenos", "pequenas", "chico", "chica"],
    "medium": ["medium", "mediano", "mediana", "medianos", "medianas", "regular"],
    "large": ["large", "grande", "grandes"],
    "extra large": ["extra large", "extra grande", "xl"],
    "serving": ["serving", "servings", "porcion", "porciones", "racion"],
}

_SYNONYM_LOOKUP = {word: canonical for canonical, words in UNIT_SYNONYMS.items() for word in words}
GRAM_WORDS = set(UNIT_SYNONYMS["g"])
SIZE_WORDS = ["extra large", "jumbo", "small", "medium", "large"]


@dataclass
class MeasureMatch:
    measure: Measure
    is_raw_grams: bool
    rule: str


def canonical_unit(unit):
    key = strip_accents(collapse_spaces((unit or "").lower())).strip(" .")
    return _SYNONYM_LOOKUP.get(key)


def _is_gram_word(text):
    return strip_accents((text or "").lower().strip()) in GRAM_WORDS


def _find_measure(unit, measures):
    for m in measures:
        if m.name.lower().strip() == unit:
            return m, "exact"
    if _is_gram_word(unit):
        return None, None
    for m in measures:
        if _is_gram_word(m.name):
            continue
        if contains_words(m.name, unit) or contains_words(unit, m.name):
            return m, "contains"
    return None, None


def match_measure(unit, measures, default=None):
    """Pick the catalog measure for a free-text unit.

    Order: exact name, whole-word containment, synonym table, raw grams.
    Never fails: the last resort is the 1 g measure with is_raw_grams set.
    """
    unit = collapse_spaces((unit or "").lower())
    measures = list(measures or [])
    if not unit:
        measure = default or (measures[0] if measures else None)
        if measure is not None:
            return MeasureMatch(measure, False, "default")
        return MeasureMatch(GRAM_MEASURE, True, "fallback")

    measure, rule = _find_measure(unit, measures)
    if measure is not None:
        return MeasureMatch(measure, False, rule)

    canonical = canonical_unit(unit)
    if canonical == "g":
        for m in measures:
            if _is_gram_word(m.name):
                return MeasureMatch(m, False, "synonym")
        return MeasureMatch(GRAM_MEASURE, True, "synonym")
    if canonical:
        measure, _ = _find_measure(canonical, measures)
        if measure is not None:
            return MeasureMatch(measure, False, "synonym")

    return MeasureMatch(GRAM_MEASURE, True, "fallback")


def size_measures(measures):
    found = []
    for m in measures or []:
        name = strip_accents(m.name.lower())
        if any(contains_words(name, word) for word in SIZE_WORDS):
            found.append(m)
    return found


def is_size_ambiguous(match, measures):
    """A unit-less (or unmatched) item whose food comes in several sizes."""
    if match.rule not in ("default", "fallback"):
        return False
    return len(size_measures(measures)) >= 2


# ── Resolver ──────────────────────────────────────────────────────────────

@dataclass
class ResolveResult:
    best: Optional[SearchCandidate] = None
    candidates: list = field(default_factory=list)
    tier: Optional[SearchTier] = None

    @property
    def found(self):
        return self.best is not None


class FoodResolver:

    def __init__(self, catalog, tiers=None, results_per_tier=RESULTS_PER_TIER, min_score=MIN_SCORE):
        self.catalog = catalog
        self.tiers = list(tiers or SEARCH_TIERS)
        self.results_per_tier = results_per_tier
        self.min_score = min_score

    async def resolve(self, query, auth):
        """Search tab by tab; stop at the first tab that returns anything."""
        query = (query or "").strip()
        if not query:
            return ResolveResult()
        for tier in self.tiers:
            foods = await self.catalog.search(query, tier, auth)
            if not foods:
                continue
            candidates = rank_candidates(query, {tier: foods[:self.results_per_tier]})
            for c in candidates[:3]:
                logger.debug("  %s %r score=%.2f sim=%.2f", tier.value, c.food.name, c.score, c.similarity)
            best = candidates[0]
            if best.score < self.min_score:
                logger.info("Best match for %r in %s scored %.2f, treating as not found",
                            query, tier.value, best.score)
                return ResolveResult(None, candidates, tier)
            return ResolveResult(best, candidates, tier)
        logger.info("No catalog results for %r in any tab", query)
        return ResolveResult()

    async def search_all(self, query, auth, limit=10):
        """Query every tab at once and merge; used for alternatives and manual searches."""
        query = (query or "").strip()
        if not query:
            return []
        results = await asyncio.gather(*(self.catalog.search(query, t, auth) for t in self.tiers))
        foods_by_tier = {t: foods[:limit] for t, foods in zip(self.tiers, results) if foods}
        seen = set()
        merged = []
        for c in rank_candidates(query, foods_by_tier):
            if c.food.id in seen:
                continue
            seen.add(c.food.id)
            merged.append(c)
        return merged[:limit]

    async def get_food(self, food_id, auth):
        foods = await self.catalog.get_foods([food_id], auth)
        if not foods:
            raise PermanentNotFound(f"Food {food_id} not found")
        return foods[0]
