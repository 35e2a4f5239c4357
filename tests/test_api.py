"""API endpoint tests.

Tests cover the transcript, article and summary pipeline endpoints, quota
and cache inspection, reading history and error mapping. All tests run
against injected in-memory services with fake collaborators.
"""

from fastapi.testclient import TestClient

from conftest import FailingStore, FakeClock
from sara.cache import ResultCache
from sara.config import Settings
from sara.errors import CollaboratorError, TranscriptNotAvailableError
from sara.history import HistoryStore
from sara.main import Services, create_app
from sara.pipeline import ArticlePipeline
from sara.quota import QuotaTracker
from sara.storage import MemoryStore

VIDEO_URL = "https://youtu.be/dQw4w9WgXcQ"
VIDEO_ID = "dQw4w9WgXcQ"


class TestTranscriptEndpoint:
    """Tests for GET /api/v1/transcript."""

    def test_get_transcript(self, client, transcripts):
        response = client.get(f"/api/v1/transcript?video_id={VIDEO_URL}")

        assert response.status_code == 200
        data = response.json()
        assert data["video_id"] == VIDEO_ID
        assert data["from_cache"] is False
        assert data["quota_remaining"] == 1
        assert len(data["transcript"]) == 2
        assert data["transcript"][0] == {"text": "Hello world", "offset_ms": 0, "duration_ms": 3500}

    def test_second_request_served_from_cache(self, client, transcripts):
        client.get(f"/api/v1/transcript?video_id={VIDEO_ID}")
        response = client.get(f"/api/v1/transcript?video_id={VIDEO_ID}")

        assert response.status_code == 200
        assert response.json()["from_cache"] is True
        assert response.json()["quota_remaining"] == 1
        assert len(transcripts.calls) == 1

    def test_invalid_url_returns_400(self, client, transcripts):
        """Test that non-YouTube URL returns 400."""
        response = client.get("/api/v1/transcript?video_id=https://example.com/watch?v=dQw4w9WgXcQ")

        assert response.status_code == 400
        assert transcripts.calls == []

    def test_missing_video_id_returns_400(self, client):
        response = client.get("/api/v1/transcript")

        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    def test_invalid_lang_returns_400(self, client):
        response = client.get(f"/api/v1/transcript?video_id={VIDEO_ID}&lang=english")
        assert response.status_code == 400

    def test_no_captions_returns_404(self, client, transcripts):
        transcripts.error = TranscriptNotAvailableError(VIDEO_ID)
        response = client.get(f"/api/v1/transcript?video_id={VIDEO_ID}")

        assert response.status_code == 404
        assert response.json()["error"] == "transcript_not_available"

    def test_quota_exhausted_returns_429(self, client, services):
        client.get("/api/v1/transcript?video_id=aaaaaaaaaaa")
        client.get("/api/v1/transcript?video_id=bbbbbbbbbbb")
        response = client.get(f"/api/v1/transcript?video_id={VIDEO_ID}")

        assert response.status_code == 429
        assert "Retry-After" in response.headers
        data = response.json()
        assert data["error"] == "quota_exceeded"
        assert data["service"] == "transcript"
        assert data["remaining"] == 0
        assert data["ceiling"] == 2
        assert data["reset_time"].startswith("2024-06-11T00:00:00")

    def test_transient_upstream_error_returns_503(self, client, transcripts, services):
        transcripts.error = CollaboratorError("transcript", "HTTP Error 429", transient=True)
        response = client.get(f"/api/v1/transcript?video_id={VIDEO_ID}")

        assert response.status_code == 503
        assert response.json()["error"] == "transcript_unavailable"

    def test_permanent_upstream_error_returns_502(self, client, transcripts):
        transcripts.error = CollaboratorError("transcript", "Video unavailable")
        response = client.get(f"/api/v1/transcript?video_id={VIDEO_ID}")

        assert response.status_code == 502
        assert response.json()["error"] == "transcript_failed"


class TestArticleEndpoints:
    """Tests for POST /api/v1/articles and /api/v1/summaries."""

    def test_create_article(self, client, llm):
        response = client.post("/api/v1/articles", json={"video_id": VIDEO_URL, "title": "Never Gonna"})

        assert response.status_code == 200
        data = response.json()
        assert data == {
            "video_id": VIDEO_ID,
            "article": "Generated text",
            "from_cache": False,
            "quota_remaining": 2,
        }
        assert len(llm.prompts) == 1

    def test_article_cached(self, client, llm):
        client.post("/api/v1/articles", json={"video_id": VIDEO_ID})
        response = client.post("/api/v1/articles", json={"video_id": VIDEO_ID})

        assert response.json()["from_cache"] is True
        assert response.json()["quota_remaining"] == 2
        assert len(llm.prompts) == 1

    def test_article_missing_video_id(self, client):
        response = client.post("/api/v1/articles", json={"title": "x"})
        assert response.status_code == 400

    def test_llm_failure_returns_503(self, client, llm, transient_collaborator_error):
        llm.error = transient_collaborator_error
        response = client.post("/api/v1/articles", json={"video_id": VIDEO_ID})

        assert response.status_code == 503
        assert response.json()["error"] == "llm_unavailable"
        assert client.get("/api/v1/quota/llm").json()["used"] == 0

    def test_create_summary(self, client, llm):
        llm.reply = "• one"
        response = client.post(
            "/api/v1/summaries",
            json={"video_id": VIDEO_ID, "article": "An article", "title": "T"},
        )

        assert response.status_code == 200
        assert response.json()["summary"] == "• one"
        assert response.json()["quota_remaining"] == 2

    def test_summary_requires_article(self, client):
        response = client.post("/api/v1/summaries", json={"video_id": VIDEO_ID, "article": ""})
        assert response.status_code == 400


class TestQuotaEndpoints:
    def test_list_quota(self, client):
        response = client.get("/api/v1/quota")

        assert response.status_code == 200
        services = {item["service"]: item for item in response.json()}
        assert set(services) == {"llm", "transcript"}
        assert services["llm"]["remaining"] == 3
        assert services["transcript"]["ceiling"] == 2

    def test_single_service_after_use(self, client):
        client.get(f"/api/v1/transcript?video_id={VIDEO_ID}")
        data = client.get("/api/v1/quota/transcript").json()

        assert data["used"] == 1
        assert data["remaining"] == 1

    def test_unknown_service_returns_404(self, client):
        response = client.get("/api/v1/quota/weather")

        assert response.status_code == 404
        assert response.json()["error"] == "unknown_service"


class TestCacheEndpoints:
    def test_stats(self, client):
        client.get(f"/api/v1/transcript?video_id={VIDEO_ID}")
        client.get(f"/api/v1/transcript?video_id={VIDEO_ID}")

        data = client.get("/api/v1/cache/stats").json()
        assert data["total_entries"] == 1
        assert data["hits"] == 1
        assert data["total_size_bytes"] > 0

    def test_remove_entry_forces_refetch(self, client, transcripts):
        client.get(f"/api/v1/transcript?video_id={VIDEO_ID}")
        assert client.delete(f"/api/v1/cache/transcript_{VIDEO_ID}").status_code == 204

        response = client.get(f"/api/v1/transcript?video_id={VIDEO_ID}")
        assert response.json()["from_cache"] is False
        assert len(transcripts.calls) == 2

    def test_clear(self, client):
        client.get(f"/api/v1/transcript?video_id={VIDEO_ID}")
        assert client.delete("/api/v1/cache").status_code == 204
        assert client.get("/api/v1/cache/stats").json()["total_entries"] == 0


class TestHistoryEndpoints:
    def test_add_and_list(self, client):
        response = client.post("/api/v1/history", json={"video_id": VIDEO_URL, "title": "Never Gonna"})

        assert response.status_code == 201
        assert response.json()["video_id"] == VIDEO_ID

        entries = client.get("/api/v1/history").json()
        assert len(entries) == 1
        assert entries[0]["title"] == "Never Gonna"
        assert entries[0]["reading_progress"] == 0

    def test_add_invalid_video(self, client):
        response = client.post("/api/v1/history", json={"video_id": "nope", "title": "x"})
        assert response.status_code == 400

    def test_update_progress(self, client):
        client.post("/api/v1/history", json={"video_id": VIDEO_ID, "title": "T"})
        response = client.put(f"/api/v1/history/{VIDEO_ID}/progress", json={"progress": 120})

        assert response.status_code == 200
        assert response.json()["reading_progress"] == 100

    def test_update_progress_unknown_video(self, client):
        response = client.put("/api/v1/history/aaaaaaaaaaa/progress", json={"progress": 10})
        assert response.status_code == 404

    def test_toggle_favorite(self, client):
        client.post("/api/v1/history", json={"video_id": VIDEO_ID, "title": "T"})

        response = client.post(f"/api/v1/history/{VIDEO_ID}/favorite")
        assert response.json() == {"video_id": VIDEO_ID, "favorite": True}

        favorites = client.get("/api/v1/history/favorites").json()
        assert [e["video_id"] for e in favorites] == [VIDEO_ID]

        response = client.post(f"/api/v1/history/{VIDEO_ID}/favorite")
        assert response.json() == {"video_id": VIDEO_ID, "favorite": False}

    def test_toggle_favorite_unknown_video(self, client):
        assert client.post("/api/v1/history/aaaaaaaaaaa/favorite").status_code == 404

    def test_export(self, client):
        client.post("/api/v1/history", json={"video_id": VIDEO_ID, "title": "T"})
        response = client.get("/api/v1/history/export")

        assert response.status_code == 200
        assert "attachment" in response.headers["content-disposition"]
        assert response.json()["entries"][0]["videoId"] == VIDEO_ID

    def test_clear(self, client):
        client.post("/api/v1/history", json={"video_id": VIDEO_ID, "title": "T"})
        assert client.delete("/api/v1/history").status_code == 204
        assert client.get("/api/v1/history").json() == []


class TestStorageFailure:
    def test_failed_write_returns_503(self, transcripts, llm):
        store = FailingStore(fail_writes=True)
        clock = FakeClock()
        cache = ResultCache(store, clock=clock)
        quota = QuotaTracker(store, clock=clock)
        services = Services(
            store=store,
            quota=quota,
            cache=cache,
            history=HistoryStore(store, clock=clock),
            pipeline=ArticlePipeline(cache=cache, quota=quota, transcripts=transcripts, llm=llm),
        )
        client = TestClient(create_app(services))

        response = client.post("/api/v1/history", json={"video_id": VIDEO_ID, "title": "T"})
        assert response.status_code == 503
        assert response.json()["error"] == "storage_unavailable"

        # Reads still work
        assert client.get("/api/v1/history").status_code == 200


class TestHealthEndpoints:
    """Tests for health check endpoints."""

    def test_root_endpoint(self, client):
        """Test root endpoint returns healthy status."""
        response = client.get("/")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["service"] == "sara"

    def test_health_endpoint(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert set(data["quota"]) == {"llm", "transcript"}
        assert data["quota"]["llm"]["remaining"] == 3
        assert data["cache"]["max_entries"] == 10
        assert data["storage"]["status"] == "healthy"


class TestLifespan:
    """Services built from settings when none are injected."""

    def test_memory_backend(self):
        config = Settings(storage_backend="memory", llm_ceiling=7)
        app = create_app(config=config)

        with TestClient(app) as client:
            response = client.get("/api/v1/quota/llm")
            assert response.status_code == 200
            assert response.json()["ceiling"] == 7
            assert isinstance(app.state.services.store, MemoryStore)

        assert app.state.services is None

    def test_sqlite_backend(self, tmp_path):
        config = Settings(storage_backend="sqlite", database_path=str(tmp_path / "sara.db"))

        with TestClient(create_app(config=config)) as client:
            response = client.post("/api/v1/history", json={"video_id": VIDEO_ID, "title": "T"})
            assert response.status_code == 201

        with TestClient(create_app(config=config)) as client:
            entries = client.get("/api/v1/history").json()
            assert [e["video_id"] for e in entries] == [VIDEO_ID]
            assert client.get("/health").json()["storage"]["backend"] == "sqlite"

    def test_requests_before_startup_return_503(self):
        client = TestClient(create_app(config=Settings(storage_backend="memory")))
        assert client.get("/api/v1/quota").status_code == 503
