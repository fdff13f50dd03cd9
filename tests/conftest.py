import pytest

from fakes import TODAY, FakeRecognizerFactory, FakeSynthesizer
from voice_agent.services.facility import load_default_repository


@pytest.fixture
def repository():
    return load_default_repository(today=TODAY)


@pytest.fixture
def synthesizer():
    return FakeSynthesizer()


@pytest.fixture
def recognizer_factory():
    return FakeRecognizerFactory()
