"""
Read-through orchestration of cache, quota and collaborators.

For every expensive result the order is fixed: a cache hit returns
immediately without touching quota; on a miss the quota is checked, the
collaborator is called, the spend is recorded only after success, and the
result is cached.
"""

import logging
from typing import Protocol

from starlette.concurrency import run_in_threadpool

from sara.cache import ResultCache, article_key, summary_key, transcript_key
from sara.llm import build_article_prompt, build_summary_prompt
from sara.quota import LLM_SERVICE, TRANSCRIPT_SERVICE, QuotaTracker
from sara.service import TranscriptSegment

logger = logging.getLogger(__name__)

# Quota units charged per collaborator call
TRANSCRIPT_COST = 1
LLM_COST = 1


def _lang_suffixed(video_id: str, lang: str) -> str:
    """English keeps the bare ID so existing cache keys stay valid."""
    return video_id if lang == "en" else f"{video_id}_{lang}"


class TranscriptSource(Protocol):
    def fetch(self, video_id: str, lang: str = "en") -> list[TranscriptSegment]: ...


class CompletionModel(Protocol):
    async def complete(self, prompt: str) -> str: ...


class ArticlePipeline:
    """Turns a video ID into transcript, article and summary, spending quota only on misses."""

    def __init__(
        self,
        cache: ResultCache,
        quota: QuotaTracker,
        transcripts: TranscriptSource,
        llm: CompletionModel,
    ):
        self.cache = cache
        self.quota = quota
        self.transcripts = transcripts
        self.llm = llm

    async def get_transcript(self, video_id: str, lang: str = "en") -> tuple[list[dict], bool]:
        """
        Return the transcript segments as dicts and whether they came from cache.

        Raises:
            QuotaExceededError: Cache miss and the transcript quota is exhausted
            CollaboratorError: The transcript source failed (no quota spent)
        """
        key = transcript_key(_lang_suffixed(video_id, lang))
        cached = await self.cache.get(key)
        if cached is not None:
            logger.info(f"Transcript cache hit for {video_id}")
            return cached, True

        await self.quota.ensure_available(TRANSCRIPT_SERVICE)
        segments = await run_in_threadpool(self.transcripts.fetch, video_id, lang)
        await self.quota.increment_counter(TRANSCRIPT_SERVICE, TRANSCRIPT_COST)

        data = [segment.to_dict() for segment in segments]
        await self.cache.set(key, data)
        return data, False

    async def generate_article(self, video_id: str, title: str = "", lang: str = "en") -> tuple[str, bool]:
        """Return the article for a video and whether it came from cache."""
        key = article_key(_lang_suffixed(video_id, lang))
        cached = await self.cache.get(key)
        if cached is not None:
            logger.info(f"Article cache hit for {video_id}")
            return cached, True

        segments, _ = await self.get_transcript(video_id, lang)
        transcript_text = " ".join(segment["text"] for segment in segments)

        await self.quota.ensure_available(LLM_SERVICE)
        article = await self.llm.complete(build_article_prompt(transcript_text, title))
        await self.quota.increment_counter(LLM_SERVICE, LLM_COST)

        await self.cache.set(key, article)
        return article, False

    async def generate_summary(self, video_id: str, article: str, title: str = "") -> tuple[str, bool]:
        """Return the TLDR summary of an article and whether it came from cache."""
        key = summary_key(video_id)
        cached = await self.cache.get(key)
        if cached is not None:
            logger.info(f"Summary cache hit for {video_id}")
            return cached, True

        await self.quota.ensure_available(LLM_SERVICE)
        summary = await self.llm.complete(build_summary_prompt(article, title))
        await self.quota.increment_counter(LLM_SERVICE, LLM_COST)

        await self.cache.set(key, summary)
        return summary, False
