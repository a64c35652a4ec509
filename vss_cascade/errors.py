"""
errors.py - Exception types raised by the cascade search engine.

Most "nothing to do" situations (empty query, empty corpus, empty graph) are
NOT errors: they return an empty result. Exceptions are reserved for caller
mistakes and for contract violations by the embedding provider, where a
silent fallback would corrupt the ranking without any signal.
"""

from __future__ import annotations


class CascadeError(Exception):
    """Base class for every error raised by vss_cascade."""


class ConfigError(CascadeError, ValueError):
    """A CascadeConfig field is out of range or inconsistent with another."""


class InvalidEmbeddingBundle(CascadeError, ValueError):
    """
    The embedding provider returned output that breaks its contract.

    Raised at the ingest/query boundary when a bundle field is missing, has
    the wrong width, holds non-finite values, or when the Matryoshka tiers
    are not prefixes of the full vector. We never substitute zeros for a
    bad field.
    """


class DuplicateIdError(CascadeError, KeyError):
    """A chunk (or graph node) with this id has already been ingested."""

    def __init__(self, chunk_id: str) -> None:
        super().__init__(chunk_id)
        self.chunk_id = chunk_id

    def __str__(self) -> str:
        return f"id already ingested: {self.chunk_id!r}"
