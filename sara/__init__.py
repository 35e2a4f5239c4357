"""SARA: YouTube transcripts turned into articles, under hard API quotas."""

__version__ = "0.3.0"
