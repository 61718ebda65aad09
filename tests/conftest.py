from __future__ import annotations

import os

import pytest

from spansquash.testing import IncrementalIdGenerator, TestExporter
from tests.utils import FakeClock

# Ensure that configuration in the environment doesn't interfere
for _name in list(os.environ):
    if _name.startswith('SPANSQUASH_'):
        del os.environ[_name]


@pytest.fixture
def id_generator() -> IncrementalIdGenerator:
    return IncrementalIdGenerator()


@pytest.fixture
def exporter() -> TestExporter:
    return TestExporter()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
