"""Shared fixtures and fakes for the Parceiro tests."""

import sys
from pathlib import Path

import pytest

# Add project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from fakes import FakeArtist, FakeBrain, FakeVoice
from parceiro_session import ChatSession
from parceiro_storage import ParceiroStorage


@pytest.fixture
def storage(tmp_path):
    return ParceiroStorage(data_dir=str(tmp_path / "data"))


@pytest.fixture
def brain():
    return FakeBrain()


@pytest.fixture
def artist():
    return FakeArtist()


@pytest.fixture
def voice():
    return FakeVoice()


@pytest.fixture
def session(brain, artist, storage, voice):
    return ChatSession(brain, artist, storage, voice=voice, clear_ack_delay=0)
