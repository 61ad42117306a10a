from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Self

import yaml
from dotenv import dotenv_values, find_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from repo_chunker.config import (
    DEFAULT_MAX_TOKENS_PER_CHUNK,
    DEFAULT_MODEL,
    DEFAULT_MODEL_LIMIT,
    MODEL_ENCODINGS,
    MODEL_LIMITS,
    ChunkingStrategy,
    EstimationMethod,
)
from repo_chunker.exceptions import ConfigurationError

ENV_FILE = find_dotenv(usecwd=True)
ENV_PREFIX = "REPO_CHUNKER_"


def _configuration_error(exc: ValidationError) -> ConfigurationError:
    err = exc.errors()[0]
    field = ".".join(str(p) for p in err.get("loc", ())) or "options"
    return ConfigurationError(field=field, value=err.get("input"), message=err.get("msg", str(exc)))


class TokenizerSettings(BaseModel):
    """Configuration of the token counter.

    Model tables default to the built-in ones and can be replaced wholesale by the caller.
    """

    model_config = ConfigDict(frozen=True)

    precise: bool = Field(default=True, description="Use tiktoken when the model has a known encoding.")
    estimation_method: EstimationMethod = Field(
        default=EstimationMethod.MIXED,
        description="Fallback estimator.",
    )
    model_encodings: dict[str, str] = Field(default_factory=lambda: dict(MODEL_ENCODINGS))
    model_limits: dict[str, int] = Field(default_factory=lambda: dict(MODEL_LIMITS))
    default_limit: int = Field(default=DEFAULT_MODEL_LIMIT, gt=0)
    cache_size: int = Field(default=4096, ge=0, description="Cached counts; 0 disables the cache.")


class ChunkingOptions(BaseModel):
    """Immutable options for a single chunking call, validated once at the entry point."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    strategy: ChunkingStrategy = ChunkingStrategy.SEMANTIC
    max_tokens_per_chunk: int = Field(default=DEFAULT_MAX_TOKENS_PER_CHUNK, gt=0)
    model: str = Field(default=DEFAULT_MODEL, min_length=1)
    overlap_tokens: int = Field(default=0, ge=0, description="Carried for callers; never applied.")
    soft_target_ratio: float = Field(default=0.8, gt=0, le=1, description="size_balanced soft budget ratio.")
    rebalance_threshold: float = Field(default=0.5, gt=0, le=1)
    rebalance_min_files: int = Field(default=3, ge=1)
    merge_small_chunks: bool = Field(default=False, description="size_balanced: merge flagged chunks.")
    resolve_dependencies: bool = Field(
        default=True,
        description="Resolve import targets to corpus paths before traversal.",
    )
    max_workers: int | None = Field(default=None, ge=1, description="Threads for token counting.")

    @model_validator(mode="after")
    def _check_overlap(self) -> Self:
        if self.overlap_tokens >= self.max_tokens_per_chunk:
            msg = "overlap_tokens must be smaller than max_tokens_per_chunk"
            raise ValueError(msg)
        return self

    @classmethod
    def build(cls, **kwargs: Any) -> ChunkingOptions:  # noqa: ANN401
        """Validate keyword options, raising `ConfigurationError` instead of pydantic's error.

        Raises:
            ConfigurationError: on an unknown strategy, a non-positive budget or any other invalid value.
        """
        try:
            return cls(**kwargs)
        except ValidationError as e:
            raise _configuration_error(e) from e


class Settings(BaseModel):
    """Configuration settings for the repo_chunker command line."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    command: str = Field(default="chunk", description="chunk or stats.")
    repo: Path = Field(default_factory=Path.cwd, description="Repository root.")
    output: Path | None = Field(default=None, description="Output file (.json, .jsonl or .md).")
    format: str = Field(default="", description="Force format (json, jsonl or markdown).")
    no_git: bool = Field(default=False, description="Do not use git ls-files.")
    log_file: str = Field(default="", description="Log file path.")
    log_level: str = Field(default="INFO", description="Log level.")
    config: Path | None = Field(default=None, description="YAML configuration file.")

    strategy: ChunkingStrategy = Field(default=ChunkingStrategy.SEMANTIC, description="Chunking strategy.")
    max_tokens: int = Field(default=DEFAULT_MAX_TOKENS_PER_CHUNK, description="Max tokens per chunk.")
    model: str = Field(default=DEFAULT_MODEL, description="Target model.")
    estimation_method: EstimationMethod = Field(default=EstimationMethod.MIXED, description="Fallback estimator.")
    no_precise: bool = Field(default=False, description="Never use tiktoken.")
    soft_target_ratio: float = Field(default=0.8, description="size_balanced soft target ratio.")
    merge_small_chunks: bool = Field(default=False, description="size_balanced: merge small chunks.")
    workers: int | None = Field(default=None, description="Threads for token counting.")

    include_glob: list[str] = Field(default_factory=list, description="Include glob.")
    exclude_glob: list[str] = Field(default_factory=list, description="Exclude glob.")
    exclude_path: list[str] = Field(default_factory=list, description="Exclude path prefix.")
    max_bytes: int = Field(default=1024 * 1024, description="Files above are skipped.")

    @classmethod
    def build(cls, **kwargs: Any) -> Settings:  # noqa: ANN401
        """Validate parsed arguments; environment defaults bypass argparse `choices`."""
        try:
            return cls(**kwargs)
        except ValidationError as e:
            raise _configuration_error(e) from e


def load_env_defaults(env_file: str | None = None) -> dict[str, str]:
    """Collect `REPO_CHUNKER_*` defaults from a `.env` file and the process environment.

    Process environment values win over the `.env` file.

    Args:
        env_file: Explicit `.env` path; defaults to the one found from the working directory.

    Returns:
        dict[str, str]: lower-cased keys without the prefix, e.g. {"model": "gpt-4o"}.
    """
    path = ENV_FILE if env_file is None else env_file
    values: dict[str, str | None] = dict(dotenv_values(path)) if path else {}
    values.update(os.environ)
    return {
        key.removeprefix(ENV_PREFIX).lower(): value
        for key, value in values.items()
        if key.startswith(ENV_PREFIX) and value is not None
    }


def load_config_file(path: Path) -> dict[str, Any]:
    """Load a YAML configuration file with optional `tokenizer` and `chunking` sections.

    Raises:
        ConfigurationError: if the file cannot be read or parsed, is not a mapping,
            or a section is not a mapping.
    """
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except OSError as e:
        raise ConfigurationError(field="config", value=str(path), message=f"Cannot read configuration file: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(field="config", value=str(path), message=f"Invalid YAML: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(field="config", value=str(path), message="Configuration file must be a mapping")
    for section in ("tokenizer", "chunking"):
        if not isinstance(data.get(section) or {}, dict):
            raise ConfigurationError(field=section, value=data[section], message="Section must be a mapping")
    return data


def tokenizer_settings_from(settings: Settings, file_config: dict[str, Any] | None = None) -> TokenizerSettings:
    """Merge the `tokenizer` section of a configuration file with CLI settings.

    Command-line values win over the file. Table entries from the file extend
    (and override) the built-in model tables.
    """
    section = dict((file_config or {}).get("tokenizer") or {})
    encodings = {**MODEL_ENCODINGS, **(section.pop("model_encodings", None) or {})}
    limits = {**MODEL_LIMITS, **(section.pop("model_limits", None) or {})}
    kwargs: dict[str, Any] = {
        **section,
        "estimation_method": settings.estimation_method,
        "model_encodings": encodings,
        "model_limits": limits,
    }
    if settings.no_precise:
        kwargs["precise"] = False
    try:
        return TokenizerSettings(**kwargs)
    except ValidationError as e:
        raise _configuration_error(e) from e


def chunking_options_from(settings: Settings, file_config: dict[str, Any] | None = None) -> ChunkingOptions:
    """Build `ChunkingOptions` from CLI settings.

    The `chunking` file section supplies the options without a command-line flag
    (`overlap_tokens`, `rebalance_threshold`, `rebalance_min_files`, `resolve_dependencies`).
    """
    section = dict((file_config or {}).get("chunking") or {})
    section.update(
        {
            "strategy": settings.strategy,
            "max_tokens_per_chunk": settings.max_tokens,
            "model": settings.model,
            "soft_target_ratio": settings.soft_target_ratio,
            "merge_small_chunks": settings.merge_small_chunks or section.get("merge_small_chunks", False),
            "max_workers": settings.workers,
        },
    )
    return ChunkingOptions.build(**section)
