import os

# Settings are read at import time; pin the values the tests rely on first.
os.environ["MEDIA_URL_SIGNING_SECRET"] = "test-signing-secret"
os.environ["MEDIA_PUBLIC_BASE_URL"] = "https://media.example.test"
os.environ["BASE_URL"] = "https://api.example.test"
os.environ["CONVERSATION_STORE"] = "memory"

import pytest

from src.voicenotes.infra.media_storage import LocalMediaStorage
from src.voicenotes.store.conversation_store import InMemoryConversationStore


@pytest.fixture
def storage(tmp_path) -> LocalMediaStorage:
    return LocalMediaStorage(str(tmp_path / "media"))


@pytest.fixture
def memory_store() -> InMemoryConversationStore:
    return InMemoryConversationStore()
