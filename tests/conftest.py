"""Shared pytest fixtures: controllable clock, in-memory store and fake collaborators."""

from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
import yt_dlp
from fastapi.testclient import TestClient

from sara.cache import ResultCache
from sara.errors import CollaboratorError, StorageError
from sara.history import HistoryStore
from sara.main import Services, create_app
from sara.pipeline import ArticlePipeline
from sara.quota import QuotaTracker, default_services
from sara.service import TranscriptSegment
from sara.storage import MemoryStore
from sara.utils import datetime_to_ms

# 2024-06-10 12:00:00 UTC
START_MS = datetime_to_ms(datetime(2024, 6, 10, 12, 0, tzinfo=timezone.utc))


class FakeClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, start: int = START_MS):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeTranscriptSource:
    """Transcript collaborator returning canned segments, or raising ``error`` if set."""

    def __init__(self):
        self.calls: list[tuple[str, str]] = []
        self.error: Exception | None = None

    def fetch(self, video_id: str, lang: str = "en") -> list[TranscriptSegment]:
        self.calls.append((video_id, lang))
        if self.error is not None:
            raise self.error
        return [
            TranscriptSegment(text="Hello world", offset_ms=0, duration_ms=3500),
            TranscriptSegment(text="This is a test subtitle", offset_ms=3500, duration_ms=3500),
        ]


class FakeLLM:
    """LLM collaborator echoing a fixed reply and recording prompts."""

    def __init__(self, reply: str = "Generated text"):
        self.reply = reply
        self.prompts: list[str] = []
        self.error: Exception | None = None

    async def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.reply


class FailingStore(MemoryStore):
    """MemoryStore whose reads and/or writes raise the given error."""

    def __init__(self, fail_reads: bool = False, fail_writes: bool = False, initial=None):
        super().__init__(initial)
        self.fail_reads = fail_reads
        self.fail_writes = fail_writes

    async def read(self, key):
        if self.fail_reads:
            raise StorageError("disk unavailable", key=key)
        return await super().read(key)

    async def write(self, key, data):
        if self.fail_writes:
            raise StorageError("disk full", key=key)
        await super().write(key, data)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def transcripts():
    return FakeTranscriptSource()


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def services(store, clock, transcripts, llm):
    """Components wired on an in-memory store with small ceilings."""
    quota = QuotaTracker(
        store,
        default_services(llm_ceiling=3, transcript_ceiling=2),
        clock=clock,
    )
    cache = ResultCache(store, max_entries=10, clock=clock)
    history = HistoryStore(store, max_entries=5, clock=clock)
    pipeline = ArticlePipeline(cache=cache, quota=quota, transcripts=transcripts, llm=llm)
    return Services(store=store, quota=quota, cache=cache, history=history, pipeline=pipeline)


@pytest.fixture
def client(services):
    """FastAPI TestClient over an app with injected in-memory services."""
    return TestClient(create_app(services))


@pytest.fixture
def mock_vtt_file(tmp_path):
    """Create a mock VTT file for testing."""
    vtt_content = """WEBVTT

00:00:00.000 --> 00:00:03.500
Hello world

00:00:03.500 --> 00:00:07.000
This is a test subtitle
"""
    vtt_file = tmp_path / "dQw4w9WgXcQ.en.vtt"
    vtt_file.write_text(vtt_content, encoding="utf-8")
    return vtt_file


@pytest.fixture
def mock_successful_extraction(mock_vtt_file):
    """Mock successful yt-dlp extraction."""
    with patch("sara.service.yt_dlp.YoutubeDL") as mock_ydl:
        mock_instance = MagicMock()
        mock_instance.extract_info = MagicMock(return_value={"id": "dQw4w9WgXcQ"})
        mock_instance.__enter__ = MagicMock(return_value=mock_instance)
        mock_instance.__exit__ = MagicMock(return_value=False)
        mock_ydl.return_value = mock_instance

        # Mock TemporaryDirectory to use our temp path
        with patch("sara.service.tempfile.TemporaryDirectory") as mock_tempdir:
            mock_cm = MagicMock()
            mock_cm.__enter__ = MagicMock(return_value=str(mock_vtt_file.parent))
            mock_cm.__exit__ = MagicMock(return_value=False)
            mock_tempdir.return_value = mock_cm

            yield mock_ydl


@pytest.fixture
def mock_429_error():
    """Mock HTTP 429 DownloadError for rate limiting tests."""
    return yt_dlp.utils.DownloadError("HTTP Error 429: Too Many Requests")


@pytest.fixture
def mock_download_error():
    """Mock generic DownloadError."""
    return yt_dlp.utils.DownloadError("Unable to download video: Download failed")


@pytest.fixture
def transient_collaborator_error():
    return CollaboratorError("llm", "rate limited", transient=True)
