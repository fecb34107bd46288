"""
Durable storage for per-user aliases and learned preferences.

The engine only talks to the PreferenceStore interface. Two implementations
ship here: an in-memory store (tests, throwaway sessions) and a JSON-file
store that keeps everything in one preferences.json.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import asdict
from datetime import datetime

from meal_models import (
    ClarificationPreference,
    ClarificationType,
    FoodAlias,
    MeasurePreference,
    SearchTier,
)

logger = logging.getLogger(__name__)


class PreferenceStore(ABC):
    """Async CRUD over aliases, clarification preferences and measure preferences."""

    @abstractmethod
    async def get_alias(self, user_id: str, term: str) -> FoodAlias | None:
        ...

    @abstractmethod
    async def list_aliases(self, user_id: str) -> list[FoodAlias]:
        ...

    @abstractmethod
    async def put_alias(self, alias: FoodAlias) -> None:
        ...

    @abstractmethod
    async def get_clarification_preference(
        self, user_id: str, food_term: str, clarification_type: ClarificationType
    ) -> ClarificationPreference | None:
        ...

    @abstractmethod
    async def list_clarification_preferences(self, user_id: str) -> list[ClarificationPreference]:
        ...

    @abstractmethod
    async def put_clarification_preference(self, pref: ClarificationPreference) -> None:
        ...

    @abstractmethod
    async def list_measure_preferences(self, user_id: str) -> list[MeasurePreference]:
        ...

    @abstractmethod
    async def put_measure_preference(self, pref: MeasurePreference) -> None:
        ...


# ── In-memory ─────────────────────────────────────────────────────────────

class InMemoryPreferenceStore(PreferenceStore):

    def __init__(self):
        self._aliases = {}
        self._clarifications = {}
        self._measures = {}

    async def get_alias(self, user_id, term):
        return self._aliases.get((user_id, term))

    async def list_aliases(self, user_id):
        return [a for (uid, _), a in self._aliases.items() if uid == user_id]

    async def put_alias(self, alias):
        self._aliases[(alias.user_id, alias.term)] = alias
        await self._changed()

    async def get_clarification_preference(self, user_id, food_term, clarification_type):
        return self._clarifications.get((user_id, food_term, ClarificationType(clarification_type)))

    async def list_clarification_preferences(self, user_id):
        return [p for (uid, _, _), p in self._clarifications.items() if uid == user_id]

    async def put_clarification_preference(self, pref):
        key = (pref.user_id, pref.food_term, ClarificationType(pref.clarification_type))
        self._clarifications[key] = pref
        await self._changed()

    async def list_measure_preferences(self, user_id):
        return [p for (uid, _), p in self._measures.items() if uid == user_id]

    async def put_measure_preference(self, pref):
        self._measures[(pref.user_id, pref.food_pattern)] = pref
        await self._changed()

    async def _changed(self):
        """Hook for subclasses that persist after every write."""


# ── JSON file ─────────────────────────────────────────────────────────────

def _encode(value):
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (SearchTier, ClarificationType)):
        return value.value
    return value


def _record(obj):
    return {k: _encode(v) for k, v in asdict(obj).items()}


def _parse_dt(value):
    return datetime.fromisoformat(value) if value else None


def _alias_from(raw):
    return FoodAlias(
        user_id=raw["user_id"],
        term=raw["term"],
        food_id=raw["food_id"],
        food_name=raw["food_name"],
        source_tier=SearchTier(raw["source_tier"]) if raw.get("source_tier") else None,
        use_count=raw.get("use_count", 1),
        is_active=raw.get("is_active", True),
        is_manual=raw.get("is_manual", False),
        created_at=_parse_dt(raw.get("created_at")),
        last_used_at=_parse_dt(raw.get("last_used_at")),
    )


def _clarification_from(raw):
    return ClarificationPreference(
        user_id=raw["user_id"],
        food_term=raw["food_term"],
        clarification_type=ClarificationType(raw["clarification_type"]),
        default_answer=raw["default_answer"],
        occurrences=raw.get("occurrences", 1),
        is_confirmed=raw.get("is_confirmed", False),
        last_used_at=_parse_dt(raw.get("last_used_at")),
    )


def _measure_from(raw):
    return MeasurePreference(
        user_id=raw["user_id"],
        food_pattern=raw["food_pattern"],
        unit=raw["unit"],
        quantity=raw.get("quantity"),
        use_count=raw.get("use_count", 1),
        is_active=raw.get("is_active", True),
    )


class JsonFilePreferenceStore(InMemoryPreferenceStore):
    """In-memory store mirrored to a JSON file after every write.

    The file is written on a worker thread; writes are serialized so the
    last snapshot taken is the last one on disk.
    """

    def __init__(self, path):
        super().__init__()
        self.path = path
        self._write_lock = None
        self._load()

    def _load(self):
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except FileNotFoundError:
            return
        except ValueError:
            logger.warning("Preferences file %s is not valid JSON; starting empty", self.path)
            return

        try:
            aliases = [_alias_from(raw) for raw in data.get("aliases", [])]
            clarifications = [_clarification_from(raw) for raw in data.get("clarifications", [])]
            measures = [_measure_from(raw) for raw in data.get("measures", [])]
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            logger.warning("Preferences file %s has unreadable records (%r); starting empty", self.path, exc)
            return

        for alias in aliases:
            self._aliases[(alias.user_id, alias.term)] = alias
        for pref in clarifications:
            self._clarifications[(pref.user_id, pref.food_term, pref.clarification_type)] = pref
        for pref in measures:
            self._measures[(pref.user_id, pref.food_pattern)] = pref

    async def _changed(self):
        data = {
            "aliases": [_record(a) for a in self._aliases.values()],
            "clarifications": [_record(p) for p in self._clarifications.values()],
            "measures": [_record(p) for p in self._measures.values()],
        }
        if self._write_lock is None:
            self._write_lock = asyncio.Lock()
        async with self._write_lock:
            await asyncio.to_thread(self._write, data)

    def _write(self, data):
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_path, self.path)


async def gather_user_preferences(store, user_id):
    """Read aliases, clarification and measure preferences concurrently."""
    return await asyncio.gather(
        store.list_aliases(user_id),
        store.list_clarification_preferences(user_id),
        store.list_measure_preferences(user_id),
    )
