"""
Transcript collaborator backed by yt-dlp.

Downloads a video's captions as WebVTT into a temporary directory and parses
the cues into ordered transcript segments. Quota accounting is not done
here: the pipeline charges the "transcript" service only after ``fetch``
returns.

Anti-blocking strategies carried over from running yt-dlp against YouTube:
    1. Browser impersonation: TLS fingerprint matching a real browser
    2. Throttling: optional sleep between subtitle requests
    3. Client source spoofing: skip the web client that needs a PO Token
    4. Retry with exponential backoff and jitter for transient errors
"""

import logging
import random
import re
import tempfile
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

import nh3
import yt_dlp
from yt_dlp.networking.impersonate import ImpersonateTarget

from sara.config import Settings
from sara.errors import CollaboratorError, TranscriptNotAvailableError

logger = logging.getLogger(__name__)

# HH:MM:SS.mmm --> HH:MM:SS.mmm, hours optional, any fraction precision
CUE_TIMING_PATTERN = re.compile(
    r"((?:\d+:)?\d{2}:\d{2}\.\d+)\s*-->\s*((?:\d+:)?\d{2}:\d{2}\.\d+)"
)
TAG_PATTERN = re.compile(r"<[^>]*>")
WHITESPACE_PATTERN = re.compile(r"\s+")

TRANSIENT_MARKERS = (
    "429",
    "502",
    "503",
    "504",
    "too many requests",
    "rate limit",
    "timeout",
    "timed out",
    "connection refused",
    "connection reset",
    "network error",
    "temporary",
    "service unavailable",
)


@dataclass
class TranscriptSegment:
    """
    One caption cue.

    Attributes:
        text: Cue text with markup removed
        offset_ms: Start of the cue from the beginning of the video
        duration_ms: How long the cue is shown
    """

    text: str
    offset_ms: int
    duration_ms: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def vtt_timestamp_to_ms(value: str) -> int:
    """
    Convert a WebVTT timestamp to milliseconds.

    Examples:
        >>> vtt_timestamp_to_ms("00:01:02.500")
        62500
        >>> vtt_timestamp_to_ms("01:02.3")
        62300
    """
    parts = value.split(":")
    seconds = float(parts[-1])
    minutes = int(parts[-2])
    hours = int(parts[-3]) if len(parts) == 3 else 0
    return round(((hours * 60 + minutes) * 60 + seconds) * 1000)


def _clean_cue_text(line: str) -> str:
    # Inline timing tags like <00:00:02.500> first, then any remaining HTML
    return nh3.clean(TAG_PATTERN.sub("", line)).strip()


def parse_vtt(content: str) -> list[TranscriptSegment]:
    """
    Parse WebVTT content into transcript segments.

    Skips the header, NOTE and STYLE blocks. Consecutive cues with identical
    text (YouTube's rolling auto-captions repeat the previous line) are
    collapsed into the first one.
    """
    segments: list[TranscriptSegment] = []
    lines = content.splitlines()
    i = 0

    while i < len(lines):
        line = lines[i].strip()
        match = CUE_TIMING_PATTERN.search(line)
        i += 1
        if not match:
            continue

        text_lines = []
        while i < len(lines) and lines[i].strip():
            cleaned = _clean_cue_text(lines[i])
            if cleaned:
                text_lines.append(cleaned)
            i += 1

        text = WHITESPACE_PATTERN.sub(" ", " ".join(text_lines)).strip()
        if not text:
            continue
        if segments and segments[-1].text == text:
            continue

        start, end = (vtt_timestamp_to_ms(t) for t in match.groups())
        segments.append(TranscriptSegment(text=text, offset_ms=start, duration_ms=max(end - start, 0)))

    return segments


class TranscriptFetcher:
    """
    Fetch a video's transcript through yt-dlp.

    ``fetch`` is blocking; the HTTP layer runs it in a thread pool.
    """

    MAX_RETRIES = 3
    RETRY_BACKOFF_BASE = 1  # seconds
    RETRY_BACKOFF_MAX = 4
    RETRY_JITTER = 0.5

    def __init__(self, config: Settings | None = None):
        self.config = config or Settings()

    def _build_ydl_options(self, lang: str, out_dir: str) -> dict:
        return {
            "impersonate": ImpersonateTarget.from_str(self.config.ytdlp_impersonate_target),
            "sleep_subtitles": self.config.ytdlp_sleep_seconds,
            # The web client now requires a PO Token; use the others
            "extractor_args": {"youtube": {"player_client": ["default,-web"]}},
            "ignoreerrors": "only_download",
            "writesubtitles": True,
            "writeautomaticsub": True,
            "subtitleslangs": [lang],
            "subtitlesformat": "vtt",
            "skip_download": True,
            "outtmpl": f"{out_dir}/%(id)s.%(ext)s",
            "quiet": True,
            "no_warnings": True,
            "logger": logger,
            "socket_timeout": self.config.ytdlp_request_timeout,
        }

    @staticmethod
    def is_transient_error(error: Exception) -> bool:
        """Rate limits, gateway errors and network hiccups are worth retrying."""
        message = str(error).lower()
        return any(marker in message for marker in TRANSIENT_MARKERS)

    def _retry_delay(self, attempt: int) -> float:
        base_delay = min(self.RETRY_BACKOFF_BASE * (2 ** attempt), self.RETRY_BACKOFF_MAX)
        return base_delay + random.uniform(0, self.RETRY_JITTER)

    def _fetch_once(self, video_id: str, lang: str, temp_dir: str) -> list[TranscriptSegment]:
        url = f"https://www.youtube.com/watch?v={video_id}"
        with yt_dlp.YoutubeDL(self._build_ydl_options(lang, temp_dir)) as ydl:
            logger.info(f"Starting yt-dlp caption download with impersonate={self.config.ytdlp_impersonate_target}")
            info = ydl.extract_info(url, download=True)
            if info is None:
                raise CollaboratorError("transcript", f"Could not read video info for {video_id}")

        vtt_files = sorted(Path(temp_dir).glob("*.vtt"))
        if not vtt_files:
            raise TranscriptNotAvailableError(video_id, lang)

        content = vtt_files[0].read_text(encoding="utf-8")
        segments = parse_vtt(content)
        if not segments:
            raise TranscriptNotAvailableError(video_id, lang)

        logger.info(f"Parsed {len(segments)} transcript segments for {video_id}")
        return segments

    def fetch(self, video_id: str, lang: str = "en") -> list[TranscriptSegment]:
        """
        Fetch the transcript of a video, retrying transient failures.

        Args:
            video_id: 11-character YouTube video ID
            lang: Caption language code

        Returns:
            Segments in playback order

        Raises:
            TranscriptNotAvailableError: The video has no captions in ``lang``
            CollaboratorError: yt-dlp failed; ``transient`` tells whether a
                later retry could succeed
        """
        for attempt in range(self.MAX_RETRIES):
            try:
                with tempfile.TemporaryDirectory(dir=self.config.ytdlp_temp_dir) as temp_dir:
                    logger.info(
                        f"Fetching transcript for {video_id} in '{lang}' "
                        f"(attempt {attempt + 1}/{self.MAX_RETRIES})"
                    )
                    return self._fetch_once(video_id, lang, temp_dir)
            except CollaboratorError:
                raise
            except yt_dlp.utils.DownloadError as e:
                transient = self.is_transient_error(e)
                if transient and attempt < self.MAX_RETRIES - 1:
                    delay = self._retry_delay(attempt)
                    logger.warning(
                        f"Transient error on attempt {attempt + 1} for {video_id}: {e}. "
                        f"Retrying in {delay:.2f}s..."
                    )
                    time.sleep(delay)
                    continue
                logger.error(f"Failed to fetch transcript for {video_id} after {attempt + 1} attempts")
                raise CollaboratorError("transcript", str(e)[:200], transient=transient) from e

        raise CollaboratorError("transcript", f"Retries exhausted for {video_id}", transient=True)
