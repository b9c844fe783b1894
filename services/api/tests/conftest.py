"""Shared fixtures: in-memory collaborators from fakes.py."""

from decimal import Decimal

import pytest

from app.services.alternatives import PriceCandidate
from fakes import FakeImageStore, FakeLlm, FakePatternStore, FakePins, FakeReceiptRepo


@pytest.fixture
def llm() -> FakeLlm:
    return FakeLlm()


@pytest.fixture
def pattern_store() -> FakePatternStore:
    return FakePatternStore()


@pytest.fixture
def receipts() -> FakeReceiptRepo:
    return FakeReceiptRepo()


@pytest.fixture
def image_store() -> FakeImageStore:
    return FakeImageStore()


@pytest.fixture
def pins() -> FakePins:
    return FakePins()


@pytest.fixture
def candidate():
    """Factory: candidate("Walmart", "4.99", "Orange Juice")."""

    def _make(store: str, price: str, item_name: str = "") -> PriceCandidate:
        return PriceCandidate(store_name=store, price=Decimal(price), item_name=item_name)

    return _make
