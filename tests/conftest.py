"""pytest configuration: shared fixtures."""

import pytest

from tests.fakes import FakeResolver


@pytest.fixture
def resolver():
    return FakeResolver({
        '10.0.0.1': ['host-a.example.com.'],
        '10.0.0.2': ['host-b.example.com.'],
        '10.0.0.3': ['host-c.example.com.', 'alias-c.example.com.'],
    })
