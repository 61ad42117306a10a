from __future__ import annotations

from pathlib import Path

import pytest

from repo_chunker.config import ChunkingStrategy, EstimationMethod
from repo_chunker.exceptions import ConfigurationError
from repo_chunker.settings import (
    ChunkingOptions,
    Settings,
    chunking_options_from,
    load_config_file,
    load_env_defaults,
    tokenizer_settings_from,
)


@pytest.mark.unit
def test_chunking_options_defaults() -> None:
    options = ChunkingOptions()

    assert options.strategy == ChunkingStrategy.SEMANTIC
    assert options.max_tokens_per_chunk == 100_000
    assert options.model == "gpt-4"
    assert options.overlap_tokens == 0
    assert options.soft_target_ratio == pytest.approx(0.8)
    assert not options.merge_small_chunks
    assert options.resolve_dependencies


@pytest.mark.unit
def test_chunking_options_build_wraps_validation_errors() -> None:
    with pytest.raises(ConfigurationError) as exc_info:
        ChunkingOptions.build(max_tokens_per_chunk=0)

    assert exc_info.value.field == "max_tokens_per_chunk"
    assert exc_info.value.value == 0
    assert isinstance(exc_info.value.__cause__, Exception)


@pytest.mark.unit
def test_chunking_options_rejects_overlap_not_below_budget() -> None:
    with pytest.raises(ConfigurationError):
        ChunkingOptions.build(max_tokens_per_chunk=500, overlap_tokens=500)

    assert ChunkingOptions.build(max_tokens_per_chunk=500, overlap_tokens=499).overlap_tokens == 499


@pytest.mark.unit
def test_chunking_options_accepts_strategy_names() -> None:
    assert ChunkingOptions.build(strategy="size_balanced").strategy == ChunkingStrategy.SIZE_BALANCED


@pytest.mark.unit
def test_load_env_defaults_reads_dotenv_and_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text(
        "REPO_CHUNKER_STRATEGY=file_based\nREPO_CHUNKER_MODEL=gpt-3.5-turbo\nOTHER_VAR=1\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("REPO_CHUNKER_MODEL", "gpt-4o")

    env = load_env_defaults(str(env_file))

    assert env["strategy"] == "file_based"
    assert env["model"] == "gpt-4o"
    assert "other_var" not in env


@pytest.mark.unit
def test_load_config_file(tmp_path: Path) -> None:
    config = tmp_path / "chunker.yaml"
    config.write_text(
        "tokenizer:\n  model_limits:\n    local-llm: 8192\n  model_encodings:\n    local-llm: cl100k_base\n"
        "chunking:\n  overlap_tokens: 50\n  rebalance_min_files: 2\n",
        encoding="utf-8",
    )

    data = load_config_file(config)
    settings = Settings(model="local-llm", max_tokens=4000, no_precise=True)
    tokenizer = tokenizer_settings_from(settings, data)
    options = chunking_options_from(settings, data)

    assert tokenizer.model_limits["local-llm"] == 8192
    assert tokenizer.model_limits["gpt-4"] == 128_000
    assert tokenizer.model_encodings["local-llm"] == "cl100k_base"
    assert tokenizer.precise is False
    assert options.model == "local-llm"
    assert options.max_tokens_per_chunk == 4000
    assert options.overlap_tokens == 50
    assert options.rebalance_min_files == 2


@pytest.mark.unit
def test_load_config_file_rejects_non_mapping(tmp_path: Path) -> None:
    config = tmp_path / "bad.yaml"
    config.write_text("- just\n- a list\n", encoding="utf-8")

    with pytest.raises(ConfigurationError):
        load_config_file(config)


@pytest.mark.unit
def test_load_config_file_rejects_non_mapping_section(tmp_path: Path) -> None:
    config = tmp_path / "bad.yaml"
    config.write_text("chunking: 12\n", encoding="utf-8")

    with pytest.raises(ConfigurationError) as exc_info:
        load_config_file(config)

    assert exc_info.value.field == "chunking"


@pytest.mark.unit
def test_unknown_chunking_key_in_config_is_a_configuration_error() -> None:
    with pytest.raises(ConfigurationError):
        chunking_options_from(Settings(), {"chunking": {"chunk_overlap": 3}})


@pytest.mark.unit
def test_tokenizer_settings_from_cli_flags() -> None:
    tokenizer = tokenizer_settings_from(Settings(estimation_method=EstimationMethod.WORDS))

    assert tokenizer.precise is True
    assert tokenizer.estimation_method == EstimationMethod.WORDS


@pytest.mark.unit
def test_load_config_file_missing_file_is_a_configuration_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError) as exc_info:
        load_config_file(tmp_path / "nope.yaml")

    assert exc_info.value.field == "config"
    assert isinstance(exc_info.value.__cause__, OSError)


@pytest.mark.unit
def test_load_config_file_malformed_yaml_is_a_configuration_error(tmp_path: Path) -> None:
    config = tmp_path / "broken.yaml"
    config.write_text("tokenizer: [unclosed\n", encoding="utf-8")

    with pytest.raises(ConfigurationError) as exc_info:
        load_config_file(config)

    assert exc_info.value.field == "config"
    assert "Invalid YAML" in str(exc_info.value)


@pytest.mark.unit
def test_command_line_flags_win_over_tokenizer_section() -> None:
    file_config = {"tokenizer": {"precise": True, "estimation_method": "words"}}

    tokenizer = tokenizer_settings_from(
        Settings(no_precise=True, estimation_method=EstimationMethod.CHARACTERS),
        file_config,
    )

    assert tokenizer.precise is False
    assert tokenizer.estimation_method == EstimationMethod.CHARACTERS


@pytest.mark.unit
def test_tokenizer_section_sets_precise_when_flag_absent() -> None:
    tokenizer = tokenizer_settings_from(Settings(), {"tokenizer": {"precise": False}})

    assert tokenizer.precise is False


@pytest.mark.unit
def test_empty_config_sections_and_tables_fall_back_to_defaults(tmp_path: Path) -> None:
    config = tmp_path / "chunker.yaml"
    config.write_text("tokenizer:\n  model_encodings:\n  model_limits:\nchunking:\n", encoding="utf-8")

    data = load_config_file(config)
    tokenizer = tokenizer_settings_from(Settings(), data)
    options = chunking_options_from(Settings(), data)

    assert tokenizer.model_limits["gpt-4"] == 128_000
    assert tokenizer.model_encodings["gpt-4"] == "cl100k_base"
    assert options.strategy == ChunkingStrategy.SEMANTIC


@pytest.mark.unit
def test_settings_build_rejects_unknown_strategy() -> None:
    with pytest.raises(ConfigurationError) as exc_info:
        Settings.build(strategy="round_robin")

    assert exc_info.value.field == "strategy"
    assert exc_info.value.value == "round_robin"
