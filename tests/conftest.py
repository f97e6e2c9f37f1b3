from __future__ import annotations

import pytest

from config import Config
from fakes import ScriptedTranslator


@pytest.fixture
def translator() -> ScriptedTranslator:
    return ScriptedTranslator()


@pytest.fixture
def config() -> Config:
    return Config(api_key="test-key")
