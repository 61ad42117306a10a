"""Token counting against a target model.

Counts are precise when `tiktoken` knows the model's encoding and otherwise
come from a deterministic estimator. Both paths are pure functions of
`(text, model)`, which keeps recursive chunking convergent and makes the
result cache safe.
"""

from __future__ import annotations

import hashlib
import math
import re
import threading
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import tiktoken

from repo_chunker.config import (
    CHARS_PER_TOKEN,
    MIXED_CHAR_WEIGHT,
    MIXED_WORD_WEIGHT,
    WORDS_PER_TOKEN,
    EstimationMethod,
)
from repo_chunker.exceptions import ConfigurationError, TokenizationError
from repo_chunker.logging import logger
from repo_chunker.models import FileStatistics, TokenStatistics
from repo_chunker.settings import TokenizerSettings

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Sequence

    from repo_chunker.config import FileRecord

_WHITESPACE = re.compile(r"\s+")
_SENTENCE_BOUNDARY = re.compile(r"[.!?]\s+")
_WORD = re.compile(r"\s*\S+\s*")


@runtime_checkable
class TokenCounterProtocol(Protocol):
    """What the chunker needs from a tokenizer; any implementation can be injected."""

    def count_tokens(self, text: str, model: str) -> int:
        """Return the number of tokens of `text` for `model`."""
        ...

    def chunk_text_by_tokens(self, text: str, max_tokens: int, model: str) -> list[str]:
        """Split `text` into pieces of at most `max_tokens` tokens each."""
        ...


def normalize_text(text: str) -> str:
    """Collapse whitespace runs to a single space and strip the ends."""
    return _WHITESPACE.sub(" ", text).strip()


def round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def estimate_by_words(text: str) -> int:
    """`ceil(word_count / 0.75)` with whitespace-delimited words."""
    return math.ceil(len(text.split()) / WORDS_PER_TOKEN)


def estimate_by_characters(text: str) -> int:
    """`ceil(char_count / 4)`, counting code points."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_by_mixed(text: str) -> int:
    """Weighted 60/40 blend of the word and character estimates.

    Example: "aaaa bbbb cccc dddd" gives words=6, characters=5, mixed=round(5.6)=6.
    """
    return round_half_up(MIXED_WORD_WEIGHT * estimate_by_words(text) + MIXED_CHAR_WEIGHT * estimate_by_characters(text))


ESTIMATORS: dict[EstimationMethod, Callable[[str], int]] = {
    EstimationMethod.WORDS: estimate_by_words,
    EstimationMethod.CHARACTERS: estimate_by_characters,
    EstimationMethod.MIXED: estimate_by_mixed,
}


def split_sentences(text: str) -> list[str]:
    """Split after sentence-ending punctuation, keeping the trailing whitespace with each sentence.

    `"".join(split_sentences(text)) == text` always holds.
    """
    pieces: list[str] = []
    start = 0
    for m in _SENTENCE_BOUNDARY.finditer(text):
        pieces.append(text[start : m.end()])
        start = m.end()
    if start < len(text):
        pieces.append(text[start:])
    return pieces or [text]


def split_words(text: str) -> list[str]:
    """Split on whitespace, keeping the whitespace attached so the pieces rejoin into `text`."""
    return _WORD.findall(text) or [text]


class TokenCounter:
    """Counts tokens for a named model, precisely with tiktoken or with the configured estimator."""

    def __init__(self, settings: TokenizerSettings | None = None) -> None:
        self.settings = settings or TokenizerSettings()
        self._encodings: dict[str, Any] = {}
        self._unavailable: set[str] = set()
        self._cache: OrderedDict[tuple[str, str], int] = OrderedDict()
        self._lock = threading.Lock()

    # ------------------------------ Model tables -----------------------------

    def get_model_encoding(self, model: str) -> str | None:
        return self.settings.model_encodings.get(model)

    def get_model_limit(self, model: str) -> int:
        return self.settings.model_limits.get(model, self.settings.default_limit)

    def get_model_limits(self, model: str) -> dict[str, Any]:
        limit = self.get_model_limit(model)
        return {
            "context_limit": limit,
            "recommended_max": int(limit * 0.8),
            "encoding": self.get_model_encoding(model),
        }

    def get_optimal_chunk_size(self, model: str, utilization_ratio: float = 0.8) -> int:
        """Return the chunk budget that uses `utilization_ratio` of the model's context window."""
        if not 0 < utilization_ratio <= 1:
            raise ConfigurationError(
                field="utilization_ratio",
                value=utilization_ratio,
                message="utilization_ratio must be in (0, 1]",
            )
        return math.floor(self.get_model_limit(model) * utilization_ratio)

    # ------------------------------ Counting ---------------------------------

    def count_tokens(self, text: str, model: str) -> int:
        """Count the tokens of `text` for `model`.

        Args:
            text: Text to measure. Whitespace runs count as a single space.
            model: Model name, looked up in the encoding table.

        Raises:
            TokenizationError: if the precise tokenizer fails while encoding.

        Returns:
            int: a non-negative token count, 0 for empty text.
        """
        if not text:
            return 0
        normalized = normalize_text(text)
        if not normalized:
            return 0
        if self.settings.cache_size == 0:
            return self._count(normalized, model)

        key = (model, hashlib.sha256(normalized.encode("utf-8", errors="surrogatepass")).hexdigest())
        with self._lock:
            cached = self._cache.get(key)
            if cached is not None:
                self._cache.move_to_end(key)
                return cached
        count = self._count(normalized, model)
        with self._lock:
            self._cache[key] = count
            if len(self._cache) > self.settings.cache_size:
                self._cache.popitem(last=False)
        return count

    def count_tokens_batch(self, texts: Iterable[str], model: str, max_workers: int | None = None) -> list[int]:
        """Count several texts, returning the counts in input order."""
        items = list(texts)
        if max_workers is None or max_workers <= 1 or len(items) < 2:  # noqa: PLR2004
            return [self.count_tokens(t, model) for t in items]
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            return list(pool.map(lambda t: self.count_tokens(t, model), items))

    def estimate(self, text: str) -> int:
        """Run the configured fallback estimator on `text` as given."""
        return ESTIMATORS[self.settings.estimation_method](text)

    def _count(self, text: str, model: str) -> int:
        encoder = self._encoder_for(model)
        if encoder is None:
            return self.estimate(text)
        try:
            return len(encoder.encode(text, disallowed_special=()))
        except Exception as e:
            raise TokenizationError(model=model, message=f"tiktoken failed to encode text: {e}") from e

    def _encoder_for(self, model: str) -> Any:  # noqa: ANN401
        if not self.settings.precise:
            return None
        encoding = self.get_model_encoding(model)
        if encoding is None or encoding in self._unavailable:
            return None
        with self._lock:
            if encoding in self._encodings:
                return self._encodings[encoding]
            try:
                enc = tiktoken.get_encoding(encoding)
            except Exception as e:  # noqa: BLE001
                # Remembered so every later count for this encoding stays on the estimator.
                self._unavailable.add(encoding)
                logger.warning("tokenizer.encoding_unavailable", encoding=encoding, error=str(e))
                return None
            self._encodings[encoding] = enc
            return enc

    # ------------------------------ Splitting --------------------------------

    def chunk_text_by_tokens(self, text: str, max_tokens: int, model: str) -> list[str]:
        """Split `text` into pieces that each count at most `max_tokens`.

        Sentences are accumulated greedily; a sentence that is too long on its
        own is split into words, and a single word that is still too long is
        emitted uncut. Pieces keep their whitespace, so joining them gives
        back `text`.

        Raises:
            ConfigurationError: if `max_tokens` is not positive.
        """
        if max_tokens <= 0:
            raise ConfigurationError(field="max_tokens", value=max_tokens, message="max_tokens must be positive")
        if self.count_tokens(text, model) <= max_tokens:
            return [text]
        return self._pack_segments(split_sentences(text), max_tokens, model, split_words)

    def _pack_segments(
        self,
        segments: Sequence[str],
        max_tokens: int,
        model: str,
        fallback: Callable[[str], list[str]] | None,
    ) -> list[str]:
        pieces: list[str] = []
        i = 0
        while i < len(segments):
            if self.count_tokens(segments[i], model) > max_tokens:
                if fallback is not None:
                    pieces.extend(self._pack_segments(fallback(segments[i]), max_tokens, model, None))
                else:
                    logger.debug("tokenizer.word_over_budget", model=model, max_tokens=max_tokens)
                    pieces.append(segments[i])
                i += 1
                continue
            end = longest_fit(segments, i, lambda s: self.count_tokens(s, model) <= max_tokens)
            pieces.append("".join(segments[i:end]))
            i = end
        return pieces

    # ------------------------------ Statistics -------------------------------

    def file_statistics(self, files: Sequence[FileRecord], model: str, max_workers: int | None = None) -> list[FileStatistics]:
        counts = self.count_tokens_batch((f.content for f in files), model, max_workers=max_workers)
        return [
            FileStatistics(path=f.path, tokens=n, size=f.size, lines=f.lines, extension=f.extension)
            for f, n in zip(files, counts, strict=True)
        ]

    def estimate_tokens_from_files(
        self,
        files: Sequence[FileRecord],
        model: str,
        max_workers: int | None = None,
    ) -> TokenStatistics:
        """Measure every file and report the total against the model's context window."""
        stats = TokenStatistics.create(
            model=model,
            model_limit=self.get_model_limit(model),
            file_stats=self.file_statistics(files, model, max_workers=max_workers),
        )
        logger.info(
            "tokenizer.statistics",
            model=model,
            files=stats.total_files,
            total_tokens=stats.total_tokens,
            model_limit=stats.model_limit,
        )
        return stats


def longest_fit(segments: Sequence[str], start: int, fits: Callable[[str], bool]) -> int:
    """Return the largest `end` such that `"".join(segments[start:end])` still fits.

    `segments[start]` alone must fit. Equivalent to appending one segment at a
    time until the next one would overflow, as long as counts grow with the
    text, but needs only a logarithmic number of measurements.
    """
    n = len(segments)
    lo, step = start + 1, 1
    while True:
        probe = min(lo + step, n)
        if probe == lo:
            return lo
        if not fits("".join(segments[start:probe])):
            hi = probe
            break
        lo = probe
        step *= 2
    while hi - lo > 1:
        mid = (lo + hi) // 2
        if fits("".join(segments[start:mid])):
            lo = mid
        else:
            hi = mid
    return lo
