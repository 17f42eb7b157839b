# tests/conftest.py

import pytest

from factories import InMemoryPaymentStore
from payrecon.config import Settings


@pytest.fixture
def settings() -> Settings:
    return Settings()


@pytest.fixture
def store() -> InMemoryPaymentStore:
    return InMemoryPaymentStore()
