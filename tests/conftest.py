from unittest.mock import MagicMock

import pytest

from payment_verifier.db import OrderStore
from payment_verifier.notifier import ResendNotifier

from fakes import FakeChainReader


@pytest.fixture
def store(tmp_path):
    return OrderStore(str(tmp_path / "orders.db"))


@pytest.fixture
def reader():
    return FakeChainReader()


@pytest.fixture
def notifier():
    return MagicMock(spec=ResendNotifier)
