"""
LLM collaborator: chat completions through the OpenAI async client.

Provider failures are wrapped in ``CollaboratorError``; rate limits,
timeouts and connection failures are marked transient. Nothing here retries:
a retry spends quota, so that decision belongs to the caller.
"""

import logging

from openai import APIConnectionError, APIError, APITimeoutError, AsyncOpenAI, OpenAIError, RateLimitError

from sara.errors import CollaboratorError

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (RateLimitError, APITimeoutError, APIConnectionError)


def build_article_prompt(transcript_text: str, title: str = "") -> str:
    return f"""You are a skilled content writer. Transform this YouTube video transcript into an engaging, well-structured article.
The article should be informative, easy to read, and maintain the key points from the original content.

Video Title: {title}

Transcript:
{transcript_text}

Please structure the article with:
1. An engaging introduction
2. Well-organized main points
3. Clear transitions between topics
4. A concise conclusion

Make it engaging and professional while maintaining accuracy to the original content."""


def build_summary_prompt(article: str, title: str = "") -> str:
    return f"""Create a TLDR (Too Long; Didn't Read) summary of this article in exactly 5 bullet points.
Each bullet point should be concise but informative, capturing the key insights or main points.

Article Title: {title}

Article Content:
{article}

Format the response as 5 bullet points, each starting with "•". Focus on the most important takeaways."""


class LLMClient:
    """Single-prompt completion against an OpenAI-compatible API."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "gpt-3.5-turbo",
        timeout: float = 60.0,
        client: AsyncOpenAI | None = None,
    ):
        self.model = model
        self._api_key = api_key
        self._timeout = timeout
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        """Create the provider client on first use so a missing key only fails LLM calls."""
        if self._client is None:
            try:
                self._client = AsyncOpenAI(api_key=self._api_key, timeout=self._timeout)
            except OpenAIError as e:
                raise CollaboratorError("llm", f"LLM provider not configured: {e}") from e
        return self._client

    async def complete(self, prompt: str) -> str:
        """
        Send ``prompt`` as a single user message and return the reply text.

        Raises:
            CollaboratorError: The provider failed or returned no content
        """
        try:
            completion = await self.client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
            )
        except TRANSIENT_ERRORS as e:
            logger.warning(f"Transient LLM provider error: {e}")
            raise CollaboratorError("llm", f"LLM provider unavailable: {e}", transient=True) from e
        except APIError as e:
            logger.error(f"LLM provider error: {e}")
            raise CollaboratorError("llm", f"LLM provider error: {e}") from e

        content = completion.choices[0].message.content if completion.choices else None
        if not content:
            raise CollaboratorError("llm", "LLM provider returned an empty completion")
        return content.strip()
