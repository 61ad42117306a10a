"""repo_chunker: split a repository into token-bounded chunks for an LLM.

Usage
-----
Run `python -m repo_chunker.cli --help` for full options. Common examples:
    - Chunk the current repository (semantic strategy, 100k-token chunks):
        uv run python -m repo_chunker.cli --output chunks.jsonl

    - Size-balanced chunks for a smaller model, as a single JSON document:
        uv run python -m repo_chunker.cli --strategy size_balanced --model gpt-3.5-turbo --max-tokens 12000 --output chunks.json

    - Markdown export with a structure tree per chunk:
        uv run python -m repo_chunker.cli --strategy directory_based --output chunks.md

    - Token statistics against the model's context window:
        uv run python -m repo_chunker.cli stats --model gpt-4o

Defaults for `--strategy`, `--max-tokens`, `--model`, `--estimation-method` and
`--log-level` can be set with `REPO_CHUNKER_*` variables in the environment or a `.env` file.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import TYPE_CHECKING

from repo_chunker.chunker import ChunkPacker
from repo_chunker.config import ChunkingStrategy, EstimationMethod
from repo_chunker.exceptions import RepoChunkerError
from repo_chunker.file_manipulation import apply_filters, list_repository_files, load_file_records
from repo_chunker.logging import logger, setup_logging
from repo_chunker.output_construction import build_json, build_jsonl, build_markdown, build_stats_report
from repo_chunker.settings import (
    Settings,
    chunking_options_from,
    load_config_file,
    load_env_defaults,
    tokenizer_settings_from,
)
from repo_chunker.token_counter import TokenCounter

if TYPE_CHECKING:
    from collections.abc import Sequence


def parse_args(argv: Sequence[str] | None = None, env: dict[str, str] | None = None) -> Settings:
    """Parse the command line; `env` supplies defaults (see `load_env_defaults`)."""
    env = load_env_defaults() if env is None else env
    p = argparse.ArgumentParser(
        description="Split a repository into token-bounded chunks for LLM consumption.",
    )
    p.add_argument(
        "command",
        nargs="?",
        choices=["chunk", "stats"],
        default="chunk",
        help="chunk (default) writes chunks; stats reports token usage.",
    )
    p.add_argument("--repo", type=str, default=".", help="Repository root.")
    p.add_argument("--output", type=str, default=None, help="Output file (.json, .jsonl or .md); stdout if omitted.")
    p.add_argument("--format", type=str, choices=["json", "jsonl", "markdown"], default="", help="Force format.")
    p.add_argument("--no-git", action="store_true", help="Do not use git ls-files.")
    p.add_argument("--log-file", type=str, default="", help="Log file path.")
    p.add_argument("--log-level", type=str, default=env.get("log_level", "INFO"), help="Log level.")
    p.add_argument("--config", type=str, default=None, help="YAML file with tokenizer/chunking sections.")

    p.add_argument(
        "--strategy",
        type=str,
        choices=[s.value for s in ChunkingStrategy],
        default=env.get("strategy", ChunkingStrategy.SEMANTIC.value),
        help="Chunking strategy.",
    )
    p.add_argument("--max-tokens", type=int, default=env.get("max_tokens", 100_000), help="Max tokens per chunk.")
    p.add_argument("--model", type=str, default=env.get("model", "gpt-4"), help="Target model.")
    p.add_argument(
        "--estimation-method",
        type=str,
        choices=[m.value for m in EstimationMethod],
        default=env.get("estimation_method", EstimationMethod.MIXED.value),
        help="Fallback estimator when no precise tokenizer is available.",
    )
    p.add_argument("--no-precise", action="store_true", help="Never use tiktoken; always estimate.")
    p.add_argument("--soft-target-ratio", type=float, default=0.8, help="size_balanced soft target ratio.")
    p.add_argument("--merge-small-chunks", action="store_true", help="size_balanced: merge small chunks.")
    p.add_argument("--workers", type=int, default=None, help="Threads for token counting.")

    p.add_argument("--include-glob", action="append", default=[], help="Include glob (repeatable).")
    p.add_argument("--exclude-glob", action="append", default=[], help="Exclude glob (repeatable).")
    p.add_argument("--exclude-path", action="append", default=[], help="Exclude path prefix (repeatable).")
    p.add_argument("--max-bytes", type=int, default=1024 * 1024, help="Files above are skipped.")
    args = p.parse_args(argv)
    return Settings.build(**vars(args))


def output_format(settings: Settings) -> str:
    fmt = (settings.format or "").strip().lower()
    if fmt:
        return fmt
    suffix = settings.output.suffix.lower() if settings.output is not None else ""
    if suffix == ".json":
        return "json"
    if suffix in {".md", ".markdown"}:
        return "markdown"
    return "jsonl"


def main(argv: Sequence[str] | None = None) -> int:
    try:
        settings = parse_args(argv)
        if settings.log_file or settings.log_level.upper() != "INFO":
            setup_logging(settings.log_file or None, settings.log_level, force=True)

        file_config = load_config_file(settings.config) if settings.config else {}
        counter = TokenCounter(tokenizer_settings_from(settings, file_config))
        options = chunking_options_from(settings, file_config)

        repo = Path(settings.repo).resolve()
        files = list_repository_files(repo, use_git=not settings.no_git)
        selected = apply_filters(
            files=files,
            repo=repo,
            includes=settings.include_glob,
            excludes=settings.exclude_glob,
            exclude_paths=settings.exclude_path,
        )
        records = load_file_records(selected, repo, max_bytes=settings.max_bytes)

        if settings.command == "stats":
            stats = counter.estimate_tokens_from_files(records, options.model, max_workers=options.max_workers)
            print(build_stats_report(stats), end="")
            return 0

        result = ChunkPacker(counter).chunk_repository(records, options)
    except RepoChunkerError as e:
        logger.error("cli.failed", error=str(e))
        print(f"error: {e}", file=sys.stderr)
        return 2

    fmt = output_format(settings)
    if fmt == "json":
        content = build_json(result)
    elif fmt == "markdown":
        content = build_markdown(result, root_name=repo.name or str(repo))
    else:
        content = build_jsonl(result)
    if settings.output is None:
        sys.stdout.write(content)
        return 0
    settings.output.write_text(content, encoding="utf-8")
    print(
        f"Wrote {settings.output} format={fmt} strategy={result.strategy} "
        f"chunks={result.chunk_count} files={len(records)} tokens={result.total_tokens}",
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
