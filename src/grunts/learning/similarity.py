"""Similarity scoring between error signatures.

Two scorers share the SimilarityMatcher protocol:

- LevenshteinMatcher: exact edit-distance similarity, O(n*m) per pair.
- MinHashMatcher: approximate Jaccard similarity over word shingles using
  fixed-size fingerprints, O(k) per pair once fingerprinted.

Lookups against a large store first narrow candidates with MinHash
(``prefilter``) and then score the survivors exactly (``best_match``).
"""

from __future__ import annotations

import hashlib
import random
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Generic, Protocol, TypeVar, runtime_checkable

from grunts.core.config import SimilarityConfig

Fingerprint = tuple[int, ...]

_MERSENNE_PRIME = (1 << 61) - 1

T = TypeVar("T")


@runtime_checkable
class SimilarityMatcher(Protocol):
    """Scores two signatures on a 0-100 scale."""

    def similarity(self, a: str, b: str) -> float:
        """Return similarity in [0, 100]; 100 means identical."""
        ...


def levenshtein_distance(a: str, b: str) -> int:
    """Edit distance between two strings using two rolling rows."""
    if len(a) < len(b):
        a, b = b, a
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i] + [0] * len(b)
        for j, char_b in enumerate(b, start=1):
            cost = 0 if char_a == char_b else 1
            current[j] = min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + cost,
            )
        previous = current
    return previous[-1]


class LevenshteinMatcher:
    """Exact similarity: ``(max_len - distance) / max_len * 100``."""

    def similarity(self, a: str, b: str) -> float:
        if not a and not b:
            return 100.0
        if not a or not b:
            return 0.0
        max_len = max(len(a), len(b))
        return (max_len - levenshtein_distance(a, b)) / max_len * 100.0


class MinHashMatcher:
    """Approximate similarity from MinHash fingerprints.

    Each of the ``num_hashes`` functions is a universal hash
    ``(a * h + b) mod p`` applied to a blake2b base hash of each shingle;
    the fingerprint keeps the minimum per function. The fraction of equal
    positions between two fingerprints estimates the Jaccard similarity of
    their shingle sets.

    Coefficients come from a seeded generator, so fingerprints are stable
    across processes and can be persisted.
    """

    def __init__(self, num_hashes: int = 64, shingle_size: int = 3, seed: int = 1) -> None:
        if num_hashes < 1:
            raise ValueError(f"num_hashes must be >= 1, got {num_hashes}")
        if shingle_size < 1:
            raise ValueError(f"shingle_size must be >= 1, got {shingle_size}")
        self.num_hashes = num_hashes
        self.shingle_size = shingle_size
        rng = random.Random(seed)
        self._coefficients = [
            (rng.randrange(1, _MERSENNE_PRIME), rng.randrange(0, _MERSENNE_PRIME))
            for _ in range(num_hashes)
        ]

    @classmethod
    def from_config(cls, config: SimilarityConfig) -> MinHashMatcher:
        return cls(
            num_hashes=config.num_hashes,
            shingle_size=config.shingle_size,
            seed=config.seed,
        )

    def shingles(self, text: str) -> set[str]:
        """Overlapping word shingles; short text collapses to one shingle."""
        words = text.split()
        if len(words) < self.shingle_size:
            return {text}
        return {
            " ".join(words[i : i + self.shingle_size])
            for i in range(len(words) - self.shingle_size + 1)
        }

    @staticmethod
    def _base_hash(shingle: str) -> int:
        digest = hashlib.blake2b(shingle.encode("utf-8"), digest_size=8).digest()
        return int.from_bytes(digest, "big")

    def fingerprint(self, text: str) -> Fingerprint:
        """Compute the k-position MinHash fingerprint of ``text``."""
        base_hashes = [self._base_hash(s) for s in self.shingles(text)]
        return tuple(
            min((a * h + b) % _MERSENNE_PRIME for h in base_hashes)
            for a, b in self._coefficients
        )

    def compare(self, fp_a: Fingerprint, fp_b: Fingerprint) -> float:
        """Percentage of positions where the fingerprints agree."""
        if len(fp_a) != len(fp_b):
            raise ValueError(
                f"fingerprint sizes differ: {len(fp_a)} vs {len(fp_b)}"
            )
        if not fp_a:
            return 100.0
        matching = sum(1 for x, y in zip(fp_a, fp_b, strict=True) if x == y)
        return matching / len(fp_a) * 100.0

    def similarity(self, a: str, b: str) -> float:
        return self.compare(self.fingerprint(a), self.fingerprint(b))


@dataclass(frozen=True)
class Match(Generic[T]):
    """A candidate that cleared the similarity threshold."""

    candidate: T
    similarity: float


def prefilter(
    query_fp: Fingerprint,
    candidates: Iterable[tuple[T, Fingerprint]],
    limit: int,
    matcher: MinHashMatcher,
) -> list[T]:
    """Keep the ``limit`` candidates with the highest approximate similarity.

    Ranks without thresholding: MinHash and edit distance use different
    scales, so a threshold here could discard true matches.
    """
    scored = [
        (matcher.compare(query_fp, fp), index, candidate)
        for index, (candidate, fp) in enumerate(candidates)
    ]
    scored.sort(key=lambda item: (-item[0], item[1]))
    return [candidate for _, _, candidate in scored[:limit]]


def best_match(
    query: str,
    candidates: Sequence[T],
    threshold: float,
    matcher: SimilarityMatcher,
    key: Callable[[T], str],
    tie_key: Callable[[T], float] | None = None,
) -> Match[T] | None:
    """Return the single best candidate scoring at least ``threshold``.

    Args:
        query: Normalized signature to look up.
        candidates: Objects to score.
        threshold: Minimum similarity (0-100) to qualify.
        matcher: Scorer used for the comparison.
        key: Extracts the signature from a candidate.
        tie_key: Breaks equal similarity; the highest value wins
            (e.g. occurrences). Without it the first candidate wins.

    Returns:
        The best Match, or None when nothing reaches the threshold.
    """
    best: Match[T] | None = None
    best_tie = float("-inf")
    for candidate in candidates:
        score = matcher.similarity(query, key(candidate))
        if score < threshold:
            continue
        tie = tie_key(candidate) if tie_key is not None else 0.0
        if best is None or score > best.similarity or (
            score == best.similarity and tie > best_tie
        ):
            best = Match(candidate=candidate, similarity=score)
            best_tie = tie
    return best


def build_matcher(config: SimilarityConfig) -> SimilarityMatcher:
    """Construct the final-comparison scorer named by the config."""
    if config.matcher == "approximate":
        return MinHashMatcher.from_config(config)
    return LevenshteinMatcher()


__all__ = [
    "Fingerprint",
    "LevenshteinMatcher",
    "Match",
    "MinHashMatcher",
    "SimilarityMatcher",
    "best_match",
    "build_matcher",
    "levenshtein_distance",
    "prefilter",
]
