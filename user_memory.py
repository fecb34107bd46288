"""
Per-user memory: food aliases, learned clarification answers and measure
preferences.

Aliases are detected in the raw meal text before it reaches the parser and
replaced by the canonical catalog name. Clarification answers are only
auto-applied once the same answer has been given twice.
"""

from __future__ import annotations

import logging
import re

from meal_models import (
    AliasRewrite,
    ClarificationPreference,
    ClarificationType,
    DetectedAlias,
    FoodAlias,
    MeasurePreference,
    utcnow,
)
from preference_store import gather_user_preferences
from text_utils import contains_words, normalize_text

logger = logging.getLogger(__name__)

CONFIRMATION_THRESHOLD = 2
MAX_PROMPT_ENTRIES = 20
NO_PREFERENCES_TEXT = "No saved preferences for this user."


# ── Alias detection ───────────────────────────────────────────────────────

def find_alias_matches(text, aliases, protected_spans=()):
    """Find whole-word occurrences of alias terms in already normalized text.

    Overlapping matches keep the longest (ties keep the earliest start).
    Matches touching a protected span are skipped. Result is ordered by start.
    """
    matches = []
    for alias in aliases:
        if not alias.is_active:
            continue
        term = normalize_text(alias.term)
        if not term:
            continue
        pattern = re.compile(r"(?<!\w)" + re.escape(term) + r"(?!\w)")
        for m in pattern.finditer(text):
            if any(m.start() < end and start < m.end() for start, end in protected_spans):
                continue
            matches.append(DetectedAlias(start=m.start(), end=m.end(), term=term, alias=alias))

    matches.sort(key=lambda d: (-d.length, d.start))
    kept = []
    for match in matches:
        if not any(match.overlaps(k) for k in kept):
            kept.append(match)
    kept.sort(key=lambda d: d.start)
    return kept


def rewrite_with_aliases(text, detected):
    """Replace detected spans with canonical food names, last span first.

    Returns the new text plus the spans the canonical names now occupy.
    """
    spans = []
    for match in sorted(detected, key=lambda d: d.start, reverse=True):
        canonical = normalize_text(match.alias.food_name)
        text = text[:match.start] + canonical + text[match.end:]
        delta = len(canonical) - match.length
        # spans recorded so far all sit to the right of this match
        spans = [(s + delta, e + delta) for s, e in spans]
        spans.append((match.start, match.start + len(canonical)))
    spans.sort()
    return AliasRewrite(text=text, spans=spans)


def match_detected_alias(item_name, detected):
    """Pick the detected alias a parsed item refers to, if any."""
    name = normalize_text(item_name)
    if not name:
        return None
    for match in detected:
        if name == normalize_text(match.alias.food_name) or name == match.term:
            return match
    for match in detected:
        if contains_words(name, match.term) or contains_words(match.term, name):
            return match
    return None


# ── Preference prompt ─────────────────────────────────────────────────────

def format_preferences(aliases, clarifications, measures):
    aliases = sorted((a for a in aliases if a.is_active), key=lambda a: -a.use_count)
    clarifications = [p for p in clarifications if p.is_confirmed]
    measures = sorted((p for p in measures if p.is_active), key=lambda p: -p.use_count)
    if not (aliases or clarifications or measures):
        return NO_PREFERENCES_TEXT

    lines = []
    if aliases:
        lines.append("Known aliases (user term -> catalog food):")
        for a in aliases[:MAX_PROMPT_ENTRIES]:
            lines.append(f'- "{a.term}" -> {a.food_name}')
    if clarifications:
        lines.append("Usual answers to clarifications:")
        for p in clarifications[:MAX_PROMPT_ENTRIES]:
            lines.append(f'- "{p.food_term}" ({p.clarification_type.value}): {p.default_answer}')
    if measures:
        lines.append("Preferred measures:")
        for p in measures[:MAX_PROMPT_ENTRIES]:
            qty = f" x{p.quantity:g}" if p.quantity else ""
            lines.append(f'- "{p.food_pattern}": {p.unit}{qty}')
    return "\n".join(lines)


# ── Service ───────────────────────────────────────────────────────────────

class UserMemory:
    """Alias and preference operations on top of a PreferenceStore."""

    def __init__(self, store, clock=utcnow):
        self.store = store
        self.clock = clock

    # Aliases

    async def find_alias(self, user_id, term):
        alias = await self.store.get_alias(user_id, normalize_text(term))
        if alias and alias.is_active:
            return alias
        return None

    async def get_active_aliases(self, user_id):
        aliases = await self.store.list_aliases(user_id)
        active = [a for a in aliases if a.is_active]
        active.sort(key=lambda a: (-a.use_count, a.term))
        return active

    async def save_alias(self, user_id, term, food_id, food_name, source_tier=None, is_manual=False):
        key = normalize_text(term)
        now = self.clock()
        alias = await self.store.get_alias(user_id, key)
        if alias is None:
            alias = FoodAlias(
                user_id=user_id,
                term=key,
                food_id=food_id,
                food_name=food_name,
                source_tier=source_tier,
                is_manual=is_manual,
                created_at=now,
                last_used_at=now,
            )
        elif alias.food_id == food_id and alias.is_active:
            alias.use_count += 1
            alias.last_used_at = now
            alias.is_manual = alias.is_manual or is_manual
        else:
            # A different food took over this term (or it was reactivated)
            logger.info("Alias %r for %s now points to %s", key, user_id, food_name)
            alias.food_id = food_id
            alias.food_name = food_name
            alias.source_tier = source_tier
            alias.is_manual = is_manual
            alias.use_count = 1
            alias.is_active = True
            alias.last_used_at = now
        await self.store.put_alias(alias)
        return alias

    async def increment_alias_usage(self, alias):
        alias.use_count += 1
        alias.last_used_at = self.clock()
        await self.store.put_alias(alias)

    async def deactivate_alias(self, user_id, term):
        alias = await self.store.get_alias(user_id, normalize_text(term))
        if alias is None or not alias.is_active:
            return False
        alias.is_active = False
        await self.store.put_alias(alias)
        return True

    async def detect_aliases(self, user_id, text, protected_spans=()):
        aliases = await self.get_active_aliases(user_id)
        if not aliases:
            return []
        return find_alias_matches(normalize_text(text), aliases, protected_spans)

    # Clarification preferences

    async def find_clarification_preference(self, user_id, term, clarification_type):
        """Return the stored answer for (term, type) only if it is confirmed."""
        pref = await self.store.get_clarification_preference(
            user_id, normalize_text(term), ClarificationType(clarification_type)
        )
        if pref and pref.is_confirmed:
            return pref
        return None

    async def record_clarification_pattern(self, user_id, term, clarification_type, answer):
        """Record an answer. Returns True when this answer just became confirmed."""
        key = normalize_text(term)
        answer = (answer or "").strip()
        if not key or not answer:
            return False
        ctype = ClarificationType(clarification_type)
        pref = await self.store.get_clarification_preference(user_id, key, ctype)
        just_confirmed = False
        if pref is None:
            pref = ClarificationPreference(
                user_id=user_id,
                food_term=key,
                clarification_type=ctype,
                default_answer=answer,
            )
        elif normalize_text(pref.default_answer) == normalize_text(answer):
            pref.occurrences += 1
            if not pref.is_confirmed and pref.occurrences >= CONFIRMATION_THRESHOLD:
                pref.is_confirmed = True
                just_confirmed = True
        else:
            pref.default_answer = answer
            pref.occurrences = 1
            pref.is_confirmed = False
        pref.last_used_at = self.clock()
        await self.store.put_clarification_preference(pref)
        if just_confirmed:
            logger.info("Learned %s answer %r for %r (user %s)", ctype.value, answer, key, user_id)
        return just_confirmed

    # Measure preferences

    async def find_measure_preference(self, user_id, food_name):
        name = normalize_text(food_name)
        if not name:
            return None
        best = None
        for pref in await self.store.list_measure_preferences(user_id):
            if not pref.is_active:
                continue
            pattern = normalize_text(pref.food_pattern)
            if pattern and (pattern in name or name in pattern):
                if best is None or len(pattern) > len(normalize_text(best.food_pattern)):
                    best = pref
        return best

    async def save_measure_preference(self, user_id, food_pattern, unit, quantity=None):
        pattern = normalize_text(food_pattern)
        existing = [p for p in await self.store.list_measure_preferences(user_id)
                    if p.food_pattern == pattern]
        if existing:
            pref = existing[0]
            pref.use_count = pref.use_count + 1 if pref.unit == unit else 1
            pref.unit = unit
            pref.quantity = quantity
            pref.is_active = True
        else:
            pref = MeasurePreference(user_id=user_id, food_pattern=pattern, unit=unit, quantity=quantity)
        await self.store.put_measure_preference(pref)
        return pref

    # Parser context

    async def build_preference_context(self, user_id):
        aliases, clarifications, measures = await gather_user_preferences(self.store, user_id)
        return format_preferences(aliases, clarifications, measures)
