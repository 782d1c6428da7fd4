import pytest

from tests.fakes import FakeConnector


@pytest.fixture
def connector() -> FakeConnector:
	return FakeConnector()
