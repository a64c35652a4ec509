"""
late_interaction.py - Token-level max-sim scoring (Stage 3).

=============================================================================
HOW LATE INTERACTION WORKS
=============================================================================

A whole-text vector squashes a document into one point. Late interaction
keeps one vector per token and compares tokens directly:

    query:     [what] [does] [it] [mean] ...
    document:  [I] [often] [think] [about] ... [what] [it] [means] ...

    for each query token:
        best = max over document tokens of cos(q_tok, d_tok) * importance(d_tok)
    score = mean of the per-query-token bests

Each query token finds its single best partner, wherever it sits in the
document and regardless of the other query tokens. A document only scores
high if EVERY query token has a good match, which is a different signal from
"the document as a whole points the same way as the query". That is why the
engine blends this score with the full-precision cosine instead of replacing
it.

Maxima start at 0, so negative similarities never pull a score below zero.

=============================================================================
"""

from __future__ import annotations

from typing import Optional

import numpy as np

from vss_cascade.matryoshka import EmbeddingProvider, HashingProvider, TokenData
from vss_cascade.similarity import cosine_matrix


class LateInteractionScorer:
    """
    Max-sim scorer over TokenData.

    Query tokens are embedded with the SAME provider rule that produced the
    document tokens at ingest time, so a token's vector depends only on the
    token itself, never on the corpus.
    """

    def __init__(self, provider: Optional[EmbeddingProvider] = None) -> None:
        self.provider = provider or HashingProvider()

    def score(self, query_text: str, document: TokenData) -> float:
        """
        Late-interaction score of a raw query against one document.

        Args:
            query_text: Query string (split on whitespace)
            document: The document's token data

        Returns:
            Score >= 0; 0.0 if either side has no tokens
        """
        if not document.tokens:
            return 0.0
        query = self.provider.embed_tokens(query_text)
        return self.score_tokens(query, document)

    @staticmethod
    def score_tokens(query: TokenData, document: TokenData) -> float:
        """
        Same as score(), for a query that has already been embedded.

        The engine embeds the query once and calls this for every candidate.
        Query-side importance is not used; only document tokens are weighted.
        """
        if not query.tokens or not document.tokens:
            return 0.0

        # sims[i, j] = cos(query token i, doc token j) * importance(doc token j)
        sims = cosine_matrix(query.embeddings, document.embeddings)
        sims = sims * np.asarray(document.importance, dtype=np.float64)[np.newaxis, :]

        best = np.maximum(sims.max(axis=1), 0.0)
        return float(best.mean())
