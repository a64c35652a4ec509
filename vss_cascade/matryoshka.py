"""
matryoshka.py - Multi-precision embedding bundles and the provider contract.

=============================================================================
OVERVIEW
=============================================================================

Every chunk (and every query) is described at several precisions at once:

    full    768 float32   Final rerank (Stage 4). The most precise and costly tier.
    medium  256 float32   Graph index tier (Stage 2). Prefix of full.
    small   128 float32   Reserved for intermediate tiers. Prefix of full.
    tiny     64 bits      One bit per dimension, thresholded from full.
    nano     32 bits      Packed into one int. Stage 1 Hamming prefilter.

plus token-level data for late interaction (Stage 3):

    tokens       whitespace-split text, empties dropped
    embeddings   one 32-dim vector per token
    importance   one non-negative weight per token (1.0 unless set)

"Matryoshka" means the smaller tiers are literally prefixes of the bigger
one, like nested dolls. A model trained for it (or the placeholders here)
keeps the first dimensions useful on their own, so a 256-dim prefix gives
an adequate neighbor ordering at a third of the cost.

=============================================================================
THE PROVIDER CONTRACT
=============================================================================

The engine never computes embeddings itself. It asks an EmbeddingProvider:

    bundle = provider.embed(text)          -> EmbeddingBundle
    tokens = provider.embed_tokens(text)   -> TokenData

and validates what comes back (validate_bundle / validate_token_data).
Requirements:

    - Determinism: the same text gives bit-identical output every call.
      The nano sketch of a query is only comparable with the nano sketches
      stored at ingest time if both came from the same deterministic rule.
    - Fixed widths, as declared in CascadeConfig.
    - medium/small are prefixes of full; tiny/nano are thresholded from
      full with one fixed threshold.

build_bundle() produces a bundle that satisfies the tier rules by
construction, so providers only have to come up with the full vector.

=============================================================================
PROVIDERS IN THIS MODULE
=============================================================================

HashingProvider (the default):
    A deterministic, explicitly NON-semantic placeholder. Tokens are hashed
    into vectors, so texts that share words get closer vectors. Good enough
    for tests, demos and benchmarking the pipeline mechanics. It knows
    nothing about meaning: "car" and "automobile" are unrelated to it.

LengthSeededProvider (legacy):
    The first demo's placeholder rule. The full vector depends only on the LENGTH
    of the text, and token vectors only on token length. Kept so results can
    be compared bit-for-bit with that demo. Do not use it for anything
    that needs a sensible ranking.

For real embeddings, see embedder.SentenceTransformerProvider.

=============================================================================
"""

from __future__ import annotations

import hashlib
import math
from dataclasses import dataclass
from functools import lru_cache
from typing import List, Optional, Protocol, Sequence, Tuple

import numpy as np

from vss_cascade.config import CascadeConfig
from vss_cascade.errors import InvalidEmbeddingBundle
from vss_cascade.similarity import pack_bits, unpack_bits

# Threshold used by the placeholder providers: value > 0.5 => bit set.
DEFAULT_BIT_THRESHOLD = 0.5


# =============================================================================
# DATA CLASSES
# =============================================================================


@dataclass(frozen=True, eq=False)
class EmbeddingBundle:
    """
    All precision tiers for one piece of text.

    Build these with build_bundle() rather than by hand: it guarantees the
    prefix and threshold invariants that validate_bundle() checks.

    eq=False because numpy arrays do not support ==-as-bool; use identical()
    for a bit-for-bit comparison.
    """

    full: np.ndarray  # float32, full_dim
    medium: np.ndarray  # float32, medium_dim (prefix of full)
    small: np.ndarray  # float32, small_dim (prefix of full)
    tiny: np.ndarray  # uint8 0/1, tiny_bits
    nano: int  # nano_bits packed, bit i = full[i] > threshold
    threshold: float  # The threshold tiny/nano were derived with

    def identical(self, other: "EmbeddingBundle") -> bool:
        """Bit-for-bit equality of every tier."""
        return (
            self.nano == other.nano
            and self.threshold == other.threshold
            and np.array_equal(self.full, other.full)
            and np.array_equal(self.medium, other.medium)
            and np.array_equal(self.small, other.small)
            and np.array_equal(self.tiny, other.tiny)
        )


@dataclass(frozen=True, eq=False)
class TokenData:
    """
    Token-level representation used by late interaction.

    tokens, embeddings and importance are parallel: row i of embeddings and
    entry i of importance belong to tokens[i].
    """

    tokens: Tuple[str, ...]
    embeddings: np.ndarray  # float32, shape (len(tokens), token_dim)
    importance: np.ndarray  # float32, shape (len(tokens),), non-negative

    def __len__(self) -> int:
        return len(self.tokens)

    def with_importance(self, weights: Sequence[float]) -> "TokenData":
        """
        Return a copy with new per-token importance weights.

        This is the weighting hook: providers start every token at 1.0 and
        callers can re-weight (e.g. down-weight stop words). The engine applies
        it when CascadeSearchEngine.ingest() is given `importance=`; a provider
        wrapper can also call it from embed_tokens().
        """
        w = np.asarray(weights, dtype=np.float32)
        if w.shape != (len(self.tokens),):
            raise ValueError(
                f"expected {len(self.tokens)} importance weights, got shape {w.shape}"
            )
        if not np.all(np.isfinite(w)) or np.any(w < 0.0):
            raise ValueError("importance weights must be finite and non-negative")
        return TokenData(tokens=self.tokens, embeddings=self.embeddings, importance=w)

    def identical(self, other: "TokenData") -> bool:
        return (
            self.tokens == other.tokens
            and np.array_equal(self.embeddings, other.embeddings)
            and np.array_equal(self.importance, other.importance)
        )


class EmbeddingProvider(Protocol):
    """What the engine needs from an embedding backend."""

    def embed(self, text: str) -> EmbeddingBundle: ...

    def embed_tokens(self, text: str) -> TokenData: ...


# =============================================================================
# BUILDERS
# =============================================================================


def tokenize(text: str) -> Tuple[str, ...]:
    """Split on any whitespace and drop empty tokens."""
    return tuple((text or "").split())


def build_bundle(
    full: Sequence[float],
    config: CascadeConfig,
    threshold: float = DEFAULT_BIT_THRESHOLD,
) -> EmbeddingBundle:
    """
    Derive every Matryoshka tier from a full-precision vector.

    Args:
        full: The full vector, exactly config.full_dim values
        config: Supplies the tier widths
        threshold: Per-dimension cut: value > threshold => bit set

    Returns:
        An EmbeddingBundle whose tiers satisfy the prefix/threshold rules
    """
    vec = np.asarray(full, dtype=np.float32).reshape(-1)
    if vec.shape[0] != config.full_dim:
        raise InvalidEmbeddingBundle(
            f"full vector has {vec.shape[0]} dims, expected {config.full_dim}"
        )

    bits = vec[: config.tiny_bits] > threshold
    return EmbeddingBundle(
        full=vec,
        medium=vec[: config.medium_dim].copy(),
        small=vec[: config.small_dim].copy(),
        tiny=bits.astype(np.uint8),
        nano=pack_bits(bits[: config.nano_bits]),
        threshold=float(threshold),
    )


def build_token_data(
    tokens: Sequence[str],
    embeddings: Sequence[Sequence[float]],
    token_dim: int,
    importance: Optional[Sequence[float]] = None,
) -> TokenData:
    """Assemble TokenData, defaulting importance to 1.0 for every token."""
    toks = tuple(tokens)
    if toks:
        mat = np.asarray(embeddings, dtype=np.float32).reshape(len(toks), -1)
    else:
        mat = np.zeros((0, token_dim), dtype=np.float32)

    if importance is None:
        weights = np.ones(len(toks), dtype=np.float32)
    else:
        weights = np.asarray(importance, dtype=np.float32)
    return TokenData(tokens=toks, embeddings=mat, importance=weights)


# =============================================================================
# VALIDATION (the ingest/query boundary)
# =============================================================================


def _check_vector(name: str, value: object, width: int) -> np.ndarray:
    if value is None:
        raise InvalidEmbeddingBundle(f"bundle field {name!r} is missing")
    arr = np.asarray(value)
    if arr.ndim != 1 or arr.shape[0] != width:
        raise InvalidEmbeddingBundle(
            f"bundle field {name!r} has shape {arr.shape}, expected ({width},)"
        )
    if not np.all(np.isfinite(arr)):
        raise InvalidEmbeddingBundle(f"bundle field {name!r} contains non-finite values")
    return arr


def validate_bundle(bundle: object, config: CascadeConfig) -> EmbeddingBundle:
    """
    Check a provider's bundle against the contract; return it unchanged.

    Raises:
        InvalidEmbeddingBundle: on any missing field, wrong width, non-finite
            value, broken prefix relation or inconsistent sketch.
    """
    if not isinstance(bundle, EmbeddingBundle):
        raise InvalidEmbeddingBundle(
            f"provider returned {type(bundle).__name__}, expected EmbeddingBundle"
        )

    full = _check_vector("full", bundle.full, config.full_dim)
    medium = _check_vector("medium", bundle.medium, config.medium_dim)
    small = _check_vector("small", bundle.small, config.small_dim)
    tiny = _check_vector("tiny", bundle.tiny, config.tiny_bits)

    if not np.array_equal(medium, full[: config.medium_dim]):
        raise InvalidEmbeddingBundle("medium tier is not a prefix of full")
    if not np.array_equal(small, full[: config.small_dim]):
        raise InvalidEmbeddingBundle("small tier is not a prefix of full")

    if bundle.nano is None:
        raise InvalidEmbeddingBundle("bundle field 'nano' is missing")
    if not isinstance(bundle.nano, (int, np.integer)) or not (
        0 <= int(bundle.nano) < (1 << config.nano_bits)
    ):
        raise InvalidEmbeddingBundle(
            f"nano sketch must be an unsigned {config.nano_bits}-bit int, got {bundle.nano!r}"
        )

    expected_bits = (full[: config.tiny_bits] > bundle.threshold).astype(np.uint8)
    if not np.array_equal(tiny, expected_bits):
        raise InvalidEmbeddingBundle("tiny sketch does not match thresholded full vector")
    if not np.array_equal(
        unpack_bits(int(bundle.nano), config.nano_bits), expected_bits[: config.nano_bits]
    ):
        raise InvalidEmbeddingBundle("nano sketch does not match thresholded full vector")

    return bundle


def validate_token_data(token_data: object, config: CascadeConfig) -> TokenData:
    """Check a provider's TokenData against the contract; return it unchanged."""
    if not isinstance(token_data, TokenData):
        raise InvalidEmbeddingBundle(
            f"provider returned {type(token_data).__name__}, expected TokenData"
        )
    if token_data.embeddings is None or token_data.importance is None:
        raise InvalidEmbeddingBundle("token data is missing embeddings or importance")

    n = len(token_data.tokens)
    emb = np.asarray(token_data.embeddings)
    if emb.shape != (n, config.token_dim):
        raise InvalidEmbeddingBundle(
            f"token embeddings have shape {emb.shape}, expected ({n}, {config.token_dim})"
        )
    weights = np.asarray(token_data.importance)
    if weights.shape != (n,):
        raise InvalidEmbeddingBundle(
            f"token importance has shape {weights.shape}, expected ({n},)"
        )
    if not np.all(np.isfinite(emb)) or not np.all(np.isfinite(weights)):
        raise InvalidEmbeddingBundle("token data contains non-finite values")
    if np.any(weights < 0.0):
        raise InvalidEmbeddingBundle("token importance must be non-negative")
    return token_data


# =============================================================================
# HASHING PROVIDER (default placeholder)
# =============================================================================


def normalize_token(token: str) -> str:
    """
    Hash key for a token: lower-cased, punctuation stripped.

    "Aware." and "aware" share a key. A token made only of punctuation
    (e.g. "--") keeps its lower-cased raw form so it still gets a vector.
    """
    lowered = token.lower()
    cleaned = "".join(ch for ch in lowered if ch.isalnum())
    return cleaned or lowered


# Entries are raw bytes (one per dimension), so a full cache stays near
# EXPAND_CACHE_SIZE * full_dim bytes (about 3 MiB at the defaults).
EXPAND_CACHE_SIZE = 4096


@lru_cache(maxsize=EXPAND_CACHE_SIZE)
def _expand_bytes(key: str, n: int) -> bytes:
    # SHA-256 in counter mode: block b hashes "key#b"
    buf = bytearray()
    block = 0
    while len(buf) < n:
        buf.extend(hashlib.sha256(f"{key}#{block}".encode("utf-8")).digest())
        block += 1
    return bytes(buf[:n])


def _expand(key: str, n: int) -> np.ndarray:
    """n deterministic values in [0, 1] for a hash key."""
    return np.frombuffer(_expand_bytes(key, n), dtype=np.uint8).astype(np.float64) / 255.0


class HashingProvider:
    """
    Deterministic bag-of-tokens embeddings from SHA-256.

    full vector  = mean over tokens of expand("dense:" + key, full_dim)
    token vector = expand("token:" + key, token_dim)

    All values are in [0, 1], so every cosine this provider feeds the engine
    is in [0, 1]. Texts sharing tokens share vector components, which gives a
    lexical (not semantic) notion of closeness. Empty text embeds to the
    zero vector, whose cosine with anything is 0.
    """

    def __init__(self, config: Optional[CascadeConfig] = None) -> None:
        self.config = config or CascadeConfig()

    def embed(self, text: str) -> EmbeddingBundle:
        tokens = tokenize(text)
        dim = self.config.full_dim
        if not tokens:
            return build_bundle(np.zeros(dim, dtype=np.float32), self.config)

        stacked = np.stack([_expand("dense:" + normalize_token(t), dim) for t in tokens])
        return build_bundle(stacked.mean(axis=0), self.config)

    def embed_tokens(self, text: str) -> TokenData:
        tokens = tokenize(text)
        dim = self.config.token_dim
        vectors = [_expand("token:" + normalize_token(t), dim) for t in tokens]
        return build_token_data(tokens, vectors, dim)


# =============================================================================
# LENGTH-SEEDED PROVIDER (legacy rule)
# =============================================================================


def _to_int32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - 0x100000000 if value & 0x80000000 else value


def xorshift32(seed: int):
    """
    32-bit xorshift generator with signed-int32 intermediate state.

    Returns a callable producing floats in [0, 1). A seed of 0 falls back to
    123456789 (xorshift is stuck at 0 forever otherwise).
    """
    state = _to_int32(seed or 123456789)

    def next_float() -> float:
        nonlocal state
        state = _to_int32(state ^ (state << 13))
        state = _to_int32(state ^ (state >> 17))
        state = _to_int32(state ^ (state << 5))
        return (state & 0xFFFFFFFF) / 4294967296.0

    return next_float


class LengthSeededProvider:
    """
    The legacy placeholder embeddings, reproduced exactly.

        full[i]   = sin((i / full_dim) * len(text)) * 0.5 + xorshift32(len(text))()
        token[j]  = sin((len(token) + j) * 0.1)

    Values are stored as float32. Because only lengths matter, two different
    texts of equal length get identical vectors; this provider exists for
    compatibility checks, not for ranking quality.
    """

    def __init__(self, config: Optional[CascadeConfig] = None) -> None:
        self.config = config or CascadeConfig()

    def embed(self, text: str) -> EmbeddingBundle:
        dim = self.config.full_dim
        seed = len(text)
        rand = xorshift32(seed)
        values: List[float] = []
        for i in range(dim):
            angle = i / dim
            values.append(math.sin(angle * seed) * 0.5 + rand())
        return build_bundle(values, self.config)

    def embed_tokens(self, text: str) -> TokenData:
        tokens = tokenize(text)
        dim = self.config.token_dim
        vectors = [[math.sin((len(t) + j) * 0.1) for j in range(dim)] for t in tokens]
        return build_token_data(tokens, vectors, dim)
