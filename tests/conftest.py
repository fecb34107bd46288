import pytest

from fakes import Clock, FakeCatalog, arepa, egg, rice
from meal_models import SearchTier
from preference_store import InMemoryPreferenceStore
from user_memory import UserMemory


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def store():
    return InMemoryPreferenceStore()


@pytest.fixture
def memory(store, clock):
    return UserMemory(store, clock=clock)


@pytest.fixture
def catalog():
    return FakeCatalog({
        ("egg", SearchTier.COMMON_FOODS): [egg()],
        ("rice", SearchTier.COMMON_FOODS): [rice()],
        ("arepa", SearchTier.CUSTOM): [arepa()],
    })
