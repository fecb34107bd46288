#!/usr/bin/env python3
"""
Cronometer catalog client.
Searches foods by tab, fetches measures and writes diary servings through the
Cronometer mobile API (JSON over HTTP, X-User-Id / X-Auth-Token headers).

Setup: put CRONOMETER_USER_ID and CRONOMETER_TOKEN in .env
"""

import argparse
import asyncio
import json
import logging
from abc import ABC, abstractmethod
from datetime import date

import requests

from meal_errors import TransientRemoteFailure
from meal_models import CatalogAuth, Food, Measure, SearchTier

logger = logging.getLogger(__name__)

BASE_URL = "https://mobile.cronometer.com/api/v2"
REQUEST_TIMEOUT = 15

# Diary group order codes used by the mobile API
MEAL_ORDERS = {
    "breakfast": 65537,
    "lunch": 131073,
    "dinner": 196609,
    "snacks": 262145,
}
DEFAULT_ORDER = 1

CATEGORY_ALIASES = {
    "desayuno": "breakfast",
    "almuerzo": "lunch",
    "comida": "lunch",
    "cena": "dinner",
    "merienda": "snacks",
    "snack": "snacks",
    "snacks": "snacks",
    "breakfast": "breakfast",
    "lunch": "lunch",
    "dinner": "dinner",
}


def normalize_category(category):
    """Map 'DESAYUNO', 'Lunch', 'snack'... onto breakfast/lunch/dinner/snacks."""
    key = (category or "").strip().lower()
    return CATEGORY_ALIASES.get(key, key)


def meal_order(category):
    return MEAL_ORDERS.get(normalize_category(category), DEFAULT_ORDER)


# ── Catalog interface ─────────────────────────────────────────────────────

class FoodCatalog(ABC):
    """Remote food catalog. Implemented by CronometerClient and by test fakes."""

    @abstractmethod
    async def search(self, query: str, tier: SearchTier, auth: CatalogAuth) -> list:
        ...

    @abstractmethod
    async def get_foods(self, ids: list, auth: CatalogAuth) -> list:
        ...

    @abstractmethod
    async def write_multi_serving(self, servings: list, auth: CatalogAuth) -> bool:
        ...


# ── Payloads ──────────────────────────────────────────────────────────────

def food_from_json(raw, tier=None):
    measures = [
        Measure(id=m.get("id"), name=m.get("name") or "", grams=float(m.get("value") or 0))
        for m in raw.get("measures") or []
    ]
    return Food(
        id=raw.get("id"),
        name=raw.get("name") or "",
        measures=measures,
        default_measure_id=raw.get("defaultMeasureId") or raw.get("measureId"),
        source_tier=tier,
    )


def build_servings(items, category, day, user_id, log_time=None):
    """One serving payload per validated item."""
    order = meal_order(category)
    servings = []
    for item in items:
        serving = {
            "order": order,
            "day": day or date.today().isoformat(),
            "userId": int(user_id) if str(user_id).isdigit() else user_id,
            "type": "Serving",
            "foodId": item.food_id,
            "measureId": item.measure_id,
            "grams": round(item.grams, 2),
        }
        if log_time:
            serving["time"] = log_time
        servings.append(serving)
    return servings


# ── HTTP client ───────────────────────────────────────────────────────────

def create_session():
    """requests session with the JSON headers the mobile API expects."""
    session = requests.Session()
    session.headers.update({
        "Accept": "application/json",
        "Content-Type": "application/json",
        "User-Agent": "meal-chat/1.0",
    })
    return session


class CronometerClient(FoodCatalog):
    """Blocking requests calls pushed onto a worker thread."""

    def __init__(self, base_url=BASE_URL, session=None, timeout=REQUEST_TIMEOUT):
        self.base_url = base_url.rstrip("/")
        self.session = session or create_session()
        self.timeout = timeout

    def _post(self, path, payload, auth=None):
        body = dict(payload)
        headers = {}
        if auth is not None:
            body["auth"] = {"userId": auth.user_id, "token": auth.token}
            headers = {"X-User-Id": str(auth.user_id), "X-Auth-Token": auth.token}
        try:
            resp = self.session.post(
                f"{self.base_url}/{path}",
                data=json.dumps(body),
                headers=headers,
                timeout=self.timeout,
            )
            resp.raise_for_status()
            return resp.json()
        except (requests.RequestException, ValueError) as exc:
            logger.warning("Cronometer %s failed: %s", path, exc)
            raise TransientRemoteFailure(f"Cronometer {path} failed: {exc}") from exc

    def login_sync(self, email, password):
        """Exchange credentials for a session key. None when Cronometer refuses them."""
        data = self._post("login", {"username": email, "password": password})
        if not isinstance(data, dict) or str(data.get("result", "")).lower() == "fail":
            logger.warning("Cronometer login refused for %s", email)
            return None
        user_id = data.get("userId") or data.get("id")
        token = data.get("sessionKey")
        if not user_id or not token:
            logger.warning("Cronometer login for %s returned no session: %s", email, sorted(data))
            return None
        logger.info("Logged into Cronometer as %s (user %s)", email, user_id)
        return CatalogAuth(user_id=str(user_id), token=token)

    def search_sync(self, query, tier, auth):
        data = self._post("find_food", {"query": query, "tab": tier.value}, auth)
        foods = [food_from_json(f, tier) for f in data.get("foods") or []]
        logger.debug("find_food %r tab=%s -> %d results", query, tier.value, len(foods))
        return foods

    def get_foods_sync(self, ids, auth):
        data = self._post("get_foods", {"ids": list(ids)}, auth)
        return [food_from_json(f) for f in data.get("foods") or []]

    def write_multi_serving_sync(self, servings, auth):
        data = self._post("multi_add_serving", {"servings": servings}, auth)
        if isinstance(data, dict) and str(data.get("result", "")).lower() == "fail":
            logger.error("multi_add_serving rejected: %s", data)
            return False
        logger.info("Logged %d servings", len(servings))
        return True

    async def login(self, email, password):
        return await asyncio.to_thread(self.login_sync, email, password)

    async def search(self, query, tier, auth):
        return await asyncio.to_thread(self.search_sync, query, tier, auth)

    async def get_foods(self, ids, auth):
        return await asyncio.to_thread(self.get_foods_sync, ids, auth)

    async def write_multi_serving(self, servings, auth):
        return await asyncio.to_thread(self.write_multi_serving_sync, servings, auth)


# ── Main ──────────────────────────────────────────────────────────────────

def main():
    from app_config import load_settings

    parser = argparse.ArgumentParser(description="Search the Cronometer catalog")
    parser.add_argument("query", help="Food to search for")
    parser.add_argument("--tab", default="ALL", choices=[t.value for t in SearchTier])
    args = parser.parse_args()

    settings = load_settings()
    auth = settings.catalog_auth()
    if auth is None:
        print("No Cronometer credentials found. Set CRONOMETER_USER_ID and CRONOMETER_TOKEN in .env")
        raise SystemExit(1)

    client = CronometerClient(settings.cronometer_base_url)
    for food in client.search_sync(args.query, SearchTier(args.tab), auth):
        measures = ", ".join(f"{m.name} ({m.grams:g} g)" for m in food.measures[:4])
        print(f"  {food.id:>10}  {food.name}  [{measures}]")


if __name__ == "__main__":
    main()
