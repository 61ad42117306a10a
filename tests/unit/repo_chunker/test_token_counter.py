from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from repo_chunker.config import EstimationMethod, FileRecord
from repo_chunker.exceptions import ConfigurationError, TokenizationError
from repo_chunker.settings import TokenizerSettings
from repo_chunker.token_counter import (
    TokenCounter,
    TokenCounterProtocol,
    estimate_by_characters,
    estimate_by_mixed,
    estimate_by_words,
    longest_fit,
    normalize_text,
    split_sentences,
    split_words,
)

if TYPE_CHECKING:
    from pytest_mock import MockerFixture


@pytest.fixture
def counter() -> TokenCounter:
    return TokenCounter(TokenizerSettings(precise=False, estimation_method=EstimationMethod.CHARACTERS))


@pytest.mark.unit
def test_estimators_on_reference_text() -> None:
    text = "aaaa bbbb cccc dddd"

    assert estimate_by_words(text) == 6
    assert estimate_by_characters(text) == 5
    assert estimate_by_mixed(text) == 6


@pytest.mark.unit
def test_fallback_mixed_estimator_is_the_default() -> None:
    counter = TokenCounter(TokenizerSettings(precise=False))

    assert counter.count_tokens("aaaa bbbb cccc dddd", "gpt-4") == 6


@pytest.mark.unit
def test_count_tokens_empty_and_whitespace(counter: TokenCounter) -> None:
    assert counter.count_tokens("", "gpt-4") == 0
    assert counter.count_tokens(" \n\t ", "gpt-4") == 0


@pytest.mark.unit
def test_count_tokens_collapses_whitespace(counter: TokenCounter) -> None:
    assert normalize_text("  a \n\n  b\t") == "a b"
    assert counter.count_tokens("abcd   \n efgh", "gpt-4") == counter.count_tokens("abcd efgh", "gpt-4")


@pytest.mark.unit
def test_count_tokens_uses_cache(counter: TokenCounter, mocker: MockerFixture) -> None:
    spy = mocker.spy(counter, "_count")

    first = counter.count_tokens("some text to count", "gpt-4")
    second = counter.count_tokens("some   text to count", "gpt-4")

    assert first == second
    assert spy.call_count == 1


@pytest.mark.unit
def test_cache_is_bounded() -> None:
    counter = TokenCounter(TokenizerSettings(precise=False, cache_size=2))

    for text in ("one", "two", "three"):
        counter.count_tokens(text, "gpt-4")

    assert len(counter._cache) == 2  # noqa: SLF001


@pytest.mark.unit
def test_precise_count_uses_tiktoken_encoding(mocker: MockerFixture) -> None:
    encoding = mocker.Mock()
    encoding.encode.return_value = [1, 2, 3]
    get_encoding = mocker.patch("repo_chunker.token_counter.tiktoken.get_encoding", return_value=encoding)
    counter = TokenCounter()

    assert counter.count_tokens("hello world", "gpt-4o") == 3
    get_encoding.assert_called_once_with("o200k_base")
    encoding.encode.assert_called_once_with("hello world", disallowed_special=())


@pytest.mark.unit
def test_unavailable_encoding_falls_back_to_estimator_once(mocker: MockerFixture) -> None:
    get_encoding = mocker.patch(
        "repo_chunker.token_counter.tiktoken.get_encoding",
        side_effect=ValueError("offline"),
    )
    counter = TokenCounter(TokenizerSettings(estimation_method=EstimationMethod.WORDS))

    assert counter.count_tokens("aaaa bbbb cccc dddd", "gpt-4") == 6
    assert counter.count_tokens("other text", "gpt-4") == 3
    get_encoding.assert_called_once()


@pytest.mark.unit
def test_unknown_model_is_estimated_without_tiktoken(mocker: MockerFixture) -> None:
    get_encoding = mocker.patch("repo_chunker.token_counter.tiktoken.get_encoding")
    counter = TokenCounter(TokenizerSettings(estimation_method=EstimationMethod.CHARACTERS))

    assert counter.count_tokens("abcdefgh", "my-local-model") == 2
    get_encoding.assert_not_called()


@pytest.mark.unit
def test_encoder_failure_raises_tokenization_error(mocker: MockerFixture) -> None:
    encoding = mocker.Mock()
    encoding.encode.side_effect = RuntimeError("boom")
    mocker.patch("repo_chunker.token_counter.tiktoken.get_encoding", return_value=encoding)
    counter = TokenCounter()

    with pytest.raises(TokenizationError) as exc_info:
        counter.count_tokens("text", "gpt-4")

    assert exc_info.value.model == "gpt-4"


@pytest.mark.unit
def test_model_tables(counter: TokenCounter) -> None:
    assert counter.get_model_limit("gpt-4") == 128_000
    assert counter.get_model_limit("claude-3-opus") == 200_000
    assert counter.get_model_limit("unknown") == 100_000
    assert counter.get_model_encoding("text-davinci-003") == "p50k_base"
    assert counter.get_model_encoding("unknown") is None
    assert counter.get_model_limits("gpt-3.5-turbo") == {
        "context_limit": 16_385,
        "recommended_max": 13_108,
        "encoding": "cl100k_base",
    }


@pytest.mark.unit
def test_optimal_chunk_size(counter: TokenCounter) -> None:
    assert counter.get_optimal_chunk_size("gpt-4") == 102_400
    assert counter.get_optimal_chunk_size("gpt-4", 1.0) == 128_000

    with pytest.raises(ConfigurationError):
        counter.get_optimal_chunk_size("gpt-4", 0)
    with pytest.raises(ConfigurationError):
        counter.get_optimal_chunk_size("gpt-4", 1.5)


@pytest.mark.unit
def test_split_helpers_rejoin_into_the_text() -> None:
    text = "First one.  Second?\nThird!  tail"

    assert "".join(split_sentences(text)) == text
    assert split_sentences(text)[0] == "First one.  "
    assert "".join(split_words("  a bb\n ccc ")) == "  a bb\n ccc "


@pytest.mark.unit
def test_chunk_text_short_text_is_returned_whole(counter: TokenCounter) -> None:
    assert counter.chunk_text_by_tokens("tiny", 10, "gpt-4") == ["tiny"]


@pytest.mark.unit
def test_chunk_text_splits_on_sentences_then_words(counter: TokenCounter) -> None:
    text = "Alpha beta. Gamma delta. Epsilon zeta."

    pieces = counter.chunk_text_by_tokens(text, 3, "gpt-4")

    assert pieces == ["Alpha beta. ", "Gamma delta. ", "Epsilon ", "zeta."]
    assert "".join(pieces) == text
    assert all(counter.count_tokens(p, "gpt-4") <= 3 for p in pieces)


@pytest.mark.unit
def test_chunk_text_leaves_single_long_word_uncut(counter: TokenCounter) -> None:
    word = "x" * 100

    assert counter.chunk_text_by_tokens(word, 5, "gpt-4") == [word]


@pytest.mark.unit
def test_chunk_text_rejects_non_positive_budget(counter: TokenCounter) -> None:
    with pytest.raises(ConfigurationError):
        counter.chunk_text_by_tokens("text", 0, "gpt-4")


@pytest.mark.unit
def test_longest_fit_matches_greedy_accumulation() -> None:
    segments = ["a", "b", "c", "d", "e"]

    assert longest_fit(segments, 0, lambda s: len(s) <= 2) == 2
    assert longest_fit(segments, 3, lambda s: len(s) <= 10) == 5
    assert longest_fit(segments, 4, lambda s: len(s) <= 1) == 5


@pytest.mark.unit
def test_count_tokens_batch_keeps_order(counter: TokenCounter) -> None:
    texts = ["a" * 4, "b" * 40, "", "c" * 8]

    assert counter.count_tokens_batch(texts, "gpt-4", max_workers=3) == [1, 10, 0, 2]
    assert counter.count_tokens_batch(texts, "gpt-4") == [1, 10, 0, 2]


@pytest.mark.unit
def test_estimate_tokens_from_files(counter: TokenCounter) -> None:
    files = [
        FileRecord.from_content("src/a.py", "a" * 40),
        FileRecord.from_content("src/b.py", "b" * 8),
        FileRecord.from_content("README.md", "c" * 20),
    ]

    stats = counter.estimate_tokens_from_files(files, "text-davinci-003")

    assert stats.total_tokens == 17
    assert stats.total_files == 3
    assert stats.model_limit == 4_097
    assert not stats.exceeds_limit
    assert stats.largest_file == "src/a.py"
    assert stats.smallest_file == "src/b.py"
    assert stats.files_by_extension()["py"]["count"] == 2
    assert [s.path for s in stats.top_files(2)] == ["src/a.py", "README.md"]
    assert stats.remaining_tokens == 4_080


@pytest.mark.unit
def test_token_counter_satisfies_protocol(counter: TokenCounter) -> None:
    assert isinstance(counter, TokenCounterProtocol)
