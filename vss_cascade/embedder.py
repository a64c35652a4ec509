"""
embedder.py - A real embedding provider backed by sentence-transformers.

=============================================================================
OVERVIEW
=============================================================================

The placeholder providers in matryoshka.py hash text; this one runs a
transformer. It fills the same EmbeddingBundle/TokenData shapes, so the
engine cannot tell the difference:

    full     model.encode(text), L2-normalized, first full_dim dims
    medium   prefix of full (build_bundle)
    small    prefix of full (build_bundle)
    tiny     sign bits of full  (threshold 0.0)
    nano     sign bits of the first nano_bits dims, packed

    tokens       whitespace split, same as everywhere else
    embeddings   model.encode(each token), L2-normalized, first token_dim dims
    importance   1.0

ABOUT THE MODEL:
----------------
The default is "all-mpnet-base-v2": 768 dims, which is exactly the full tier.
Any model with at least full_dim output dims works; extra dims are dropped,
which is only meaningful for Matryoshka-trained models (e.g.
"nomic-ai/nomic-embed-text-v1.5"). A model with FEWER dims than full_dim is
rejected at construction time.

WHY SIGN BITS (threshold 0.0)?
------------------------------
Unit-normalized transformer embeddings have components around +-0.05; a 0.5
threshold would switch every bit off. Splitting at 0 is the standard binary
quantization for such vectors. The threshold is fixed per provider, which is
all the bundle contract asks for.

This module needs the optional "embeddings" extra:

    pip install "vss-cascade[embeddings]"

IMPORTANT: ingest and query must use the same model. Embeddings from
different models are NOT compatible, and neither are their sketches.

=============================================================================
"""

from __future__ import annotations

from typing import Any, List, Optional

import numpy as np
from sentence_transformers import SentenceTransformer

from vss_cascade.config import CascadeConfig
from vss_cascade.errors import InvalidEmbeddingBundle
from vss_cascade.matryoshka import (
    EmbeddingBundle,
    TokenData,
    build_bundle,
    build_token_data,
    tokenize,
)
from vss_cascade.similarity import l2_normalize_rows

DEFAULT_MODEL = "all-mpnet-base-v2"
SIGN_THRESHOLD = 0.0


class SentenceTransformerProvider:
    """
    EmbeddingProvider over a SentenceTransformer model.

    Loading the model is SLOW (seconds). Build one provider at startup and
    share it; do not create one per request.
    """

    def __init__(
        self,
        model_name: str = DEFAULT_MODEL,
        config: Optional[CascadeConfig] = None,
        batch_size: int = 64,
        model: Optional[Any] = None,
    ) -> None:
        """
        Args:
            model_name: HuggingFace model name
            config: Tier widths to produce
            batch_size: Encoding batch size for token batches
            model: An already-loaded model (skips loading model_name)
        """
        self.model_name = model_name
        self.config = config or CascadeConfig()
        self.batch_size = int(batch_size)
        self.model = model if model is not None else SentenceTransformer(model_name)

        dim = self._model_dim()
        if dim is not None and dim < self.config.full_dim:
            raise InvalidEmbeddingBundle(
                f"model {model_name!r} produces {dim} dims, need at least {self.config.full_dim}"
            )

    def _model_dim(self) -> Optional[int]:
        getter = getattr(self.model, "get_sentence_embedding_dimension", None)
        return getter() if callable(getter) else None

    def _encode(self, texts: List[str]) -> np.ndarray:
        emb = self.model.encode(
            texts,
            batch_size=self.batch_size,
            convert_to_numpy=True,
            show_progress_bar=False,
        )
        arr = np.asarray(emb, dtype="float32")
        if arr.ndim == 1:
            arr = arr.reshape(1, -1)
        return l2_normalize_rows(arr)

    def embed(self, text: str) -> EmbeddingBundle:
        vec = self._encode([text])[0]
        if vec.shape[0] < self.config.full_dim:
            raise InvalidEmbeddingBundle(
                f"model returned {vec.shape[0]} dims, need at least {self.config.full_dim}"
            )
        return build_bundle(vec[: self.config.full_dim], self.config, threshold=SIGN_THRESHOLD)

    def embed_tokens(self, text: str) -> TokenData:
        tokens = tokenize(text)
        dim = self.config.token_dim
        if not tokens:
            return build_token_data(tokens, [], dim)

        vectors = self._encode(list(tokens))
        # Re-normalize the truncated prefix so token cosines stay well scaled
        vectors = l2_normalize_rows(vectors[:, :dim])
        return build_token_data(tokens, vectors, dim)
