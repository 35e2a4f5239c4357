"""
Entry point for SARA.

Run this file directly to start the FastAPI server:
    python main.py
    python -m main

Or use uvicorn directly:
    uvicorn sara.main:app --reload --host 0.0.0.0 --port 8000
"""

import uvicorn

from sara.config import settings


def main() -> None:
    """
    Start the uvicorn server.

    Server configuration can be overridden via environment variables:
    - HOST: Server host (default: 0.0.0.0)
    - PORT: Server port (default: 8000)
    - SARA_STORAGE_BACKEND: sqlite, memory or redis (default: sqlite)
    - SARA_LLM_CEILING / SARA_TRANSCRIPT_CEILING: quota ceilings
    """
    print("=" * 60)
    print("SARA: YouTube Transcript to Article")
    print("=" * 60)
    print(f"Starting server on http://{settings.host}:{settings.port}")
    print("Quotas:")
    print(f"  - LLM: {settings.llm_ceiling} per {settings.llm_window_hours}h")
    print(f"  - Transcript: {settings.transcript_ceiling} per UTC day")
    print(f"  - Storage: {settings.storage_backend}")
    print("=" * 60)

    uvicorn.run(
        "sara.main:app",
        host=settings.host,
        port=settings.port,
        reload=True,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
