import os
import tempfile

# main.py creates its static directories on import
os.environ.setdefault("KEYCHAIN_STATIC_DIR", tempfile.mkdtemp(prefix="keychain-static-"))

import pytest

from models import ManufacturabilityVerdict
from tests.helpers import FakeCheckout, FakeGate, FakeStore


@pytest.fixture
def printable_verdict():
    return ManufacturabilityVerdict(
        is_printable=True,
        recommended_scale=28,
        suggested_colors=("#FF0000", "#FFFFFF"),
        estimated_price="14.00",
        reasoning="Bold shapes, prints well.",
    )


@pytest.fixture
def rejected_verdict():
    return ManufacturabilityVerdict(
        is_printable=False,
        recommended_scale=None,
        suggested_colors=(),
        estimated_price="0",
        reasoning="The line work is too fine to print at any allowed size.",
    )


@pytest.fixture
def gate(printable_verdict):
    return FakeGate(printable_verdict)


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def checkout():
    return FakeCheckout()
