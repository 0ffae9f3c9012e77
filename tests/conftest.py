import pytest

from helpers import FakeTransport, ModelBuilder


@pytest.fixture
def builder() -> ModelBuilder:
    return ModelBuilder()


@pytest.fixture
def make_transport():
    return FakeTransport
