"""Packing of a file set into ordered, token-bounded chunks.

Every strategy reduces to two shared primitives: `pack_flat`, the greedy
file-by-file packer that also splits files too large for any chunk, and
`pack_groups`, the same greedy loop over groups of related files that falls
back to `pack_flat` for a group that cannot fit. Strategies are registered in
`STRATEGIES` and never call each other.

Chunks are produced in two passes: strategies finalize chunks (token count
recomputed, metadata, context info), then `link_chunks` attaches the
previous/next boundaries and cross-chunk dependency references.
"""

from __future__ import annotations

import uuid
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from functools import wraps
from typing import TYPE_CHECKING, Any

from repo_chunker.config import OVERSIZED_FILE_CHUNK, ChunkingStrategy, PartialFileFragment
from repo_chunker.dependency_graph import (
    DependencyGraphBuilder,
    PathIndex,
    extract_dependencies,
    find_entry_points,
    resolve_dependency,
    unique,
    walk_dependencies,
)
from repo_chunker.exceptions import ConfigurationError, TokenizationError
from repo_chunker.logging import logger
from repo_chunker.metadata import ChunkMetadataGenerator
from repo_chunker.models import Chunk, ChunkingResult, ContextBoundaries, CrossReference
from repo_chunker.settings import ChunkingOptions
from repo_chunker.token_counter import TokenCounter, longest_fit

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from repo_chunker.config import FileRecord
    from repo_chunker.dependency_graph import DependencyGraph
    from repo_chunker.token_counter import TokenCounterProtocol

    StrategyFn = Callable[["PackingContext", Sequence[FileRecord]], list[Chunk]]

STRATEGIES: dict[ChunkingStrategy, StrategyFn] = {}


def register_strategy(strategy: ChunkingStrategy) -> Callable[[StrategyFn], StrategyFn]:
    """Decorator registering a packing function for a strategy.

    Args:
        strategy (ChunkingStrategy): the strategy the decorated function implements.

    Returns:
        Callable[[StrategyFn], StrategyFn]: a decorator that records the function in
        `STRATEGIES` and returns it.
    """

    def decorator(func: StrategyFn) -> StrategyFn:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:  # noqa: ANN401
            return func(*args, **kwargs)

        STRATEGIES[strategy] = wrapper
        return wrapper

    return decorator


def default_id_factory() -> str:
    return str(uuid.uuid4())


def restrict(resolved: DependencyGraph, paths: Sequence[str]) -> DependencyGraph:
    """Sub-graph of `resolved` over `paths`, edges leaving the subset dropped."""
    keep = set(paths)
    return {p: [t for t in resolved.get(p, []) if t in keep] for p in paths}


def semantic_groups(files: Sequence[FileRecord], resolved: DependencyGraph) -> list[list[FileRecord]]:
    """Group files with everything reachable from them, walking from each unassigned file in order.

    A file reached from an earlier group stays in that group, so groups never overlap.
    """
    by_path = {f.path: f for f in files}
    graph = restrict(resolved, list(by_path))
    assigned: set[str] = set()
    groups: list[list[FileRecord]] = []
    for f in files:
        if f.path in assigned:
            continue
        members = walk_dependencies(f.path, graph, skip=assigned)
        assigned.update(members)
        groups.append([by_path[p] for p in members])
    return groups


def _checked_count(value: Any, model: str) -> int:  # noqa: ANN401
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise TokenizationError(model=model, message=f"Token counter returned an invalid count: {value!r}")
    return value


@dataclass
class PackingContext:
    """State shared by the strategies during one chunking call."""

    counter: TokenCounterProtocol
    options: ChunkingOptions
    resolved: DependencyGraph
    metadata: ChunkMetadataGenerator
    id_factory: Callable[[], str]
    file_tokens_by_path: dict[str, int] = field(default_factory=dict)

    @property
    def max_tokens(self) -> int:
        return self.options.max_tokens_per_chunk

    @property
    def model(self) -> str:
        return self.options.model

    def count(self, text: str) -> int:
        return _checked_count(self.counter.count_tokens(text, self.model), self.model)

    def file_tokens(self, file: FileRecord) -> int:
        if isinstance(file, PartialFileFragment):
            return self.count(file.content)
        cached = self.file_tokens_by_path.get(file.path)
        if cached is None:
            cached = self.file_tokens_by_path[file.path] = self.count(file.content)
        return cached

    def group_tokens(self, files: Sequence[FileRecord]) -> int:
        return sum(self.file_tokens(f) for f in files)

    def finalize(self, files: Sequence[FileRecord], **metadata: Any) -> Chunk:  # noqa: ANN401
        """Freeze a chunk; the token count is measured again rather than taken from the packer's running sum."""
        token_count = sum(self.count(f.content) for f in files)
        chunk_metadata = self.metadata.chunk_metadata(files, token_count, self.options.strategy)
        if metadata:
            chunk_metadata = chunk_metadata.model_copy(update=metadata)
        return Chunk(
            id=self.id_factory(),
            files=list(files),
            token_count=token_count,
            metadata=chunk_metadata,
            context_info=self.metadata.context_info(files, self.resolved),
        )

    def pack_flat(self, files: Sequence[FileRecord], budget: int | None = None) -> list[Chunk]:
        """Greedy packing in the given order.

        A chunk is closed when the next file would push it over `budget`
        (defaults to the chunk limit). A file larger than the chunk limit is
        split into fragments that get one chunk each.
        """
        budget = budget or self.max_tokens
        chunks: list[Chunk] = []
        current: list[FileRecord] = []
        current_tokens = 0
        for f in files:
            tokens = self.file_tokens(f)
            if current_tokens + tokens > budget:
                if current:
                    chunks.append(self.finalize(current))
                    current, current_tokens = [], 0
                if tokens > self.max_tokens:
                    chunks.extend(self.split_oversized_file(f))
                    continue
            current.append(f)
            current_tokens += tokens
        if current:
            chunks.append(self.finalize(current))
        return chunks

    def pack_groups(self, groups: Sequence[Sequence[FileRecord]]) -> list[Chunk]:
        """Greedy packing of whole groups; a group larger than the limit goes through `pack_flat`."""
        chunks: list[Chunk] = []
        current: list[FileRecord] = []
        current_tokens = 0
        for group in groups:
            tokens = self.group_tokens(group)
            if current_tokens + tokens > self.max_tokens:
                if current:
                    chunks.append(self.finalize(current))
                    current, current_tokens = [], 0
                if tokens > self.max_tokens:
                    logger.debug("chunking.split_group", files=len(group), tokens=tokens)
                    chunks.extend(self.pack_flat(group))
                    continue
            current.extend(group)
            current_tokens += tokens
        if current:
            chunks.append(self.finalize(current))
        return chunks

    def split_oversized_file(self, file: FileRecord) -> list[Chunk]:
        """Cut a file that exceeds the chunk limit into fragments, one chunk per fragment."""
        pieces = [
            piece
            for text in self.counter.chunk_text_by_tokens(file.content, self.max_tokens, self.model)
            for piece in self._enforce_limit(text)
            if piece
        ]
        if "".join(pieces) != file.content:
            logger.debug("chunking.fragments_differ_from_source", path=file.path)
        logger.debug("chunking.split_file", path=file.path, parts=len(pieces))
        total = len(pieces)
        return [
            self.finalize(
                [PartialFileFragment.from_record(file, piece, part, total)],
                chunk_type=OVERSIZED_FILE_CHUNK,
                original_file=file.path,
                part=part,
                total_parts=total,
            )
            for part, piece in enumerate(pieces, start=1)
        ]

    def _enforce_limit(self, text: str) -> list[str]:
        # The splitter leaves over-long words uncut; cut those on characters.
        if self.count(text) <= self.max_tokens:
            return [text]
        chars = list(text)
        pieces: list[str] = []
        i = 0
        while i < len(chars):
            if self.count(chars[i]) > self.max_tokens:
                logger.warning("chunking.character_over_budget", max_tokens=self.max_tokens)
                pieces.append(chars[i])
                i += 1
                continue
            end = longest_fit(chars, i, lambda s: self.count(s) <= self.max_tokens)
            pieces.append("".join(chars[i:end]))
            i = end
        return pieces


# ------------------------------ Strategies ----------------------------------


@register_strategy(ChunkingStrategy.FILE_BASED)
def file_based(ctx: PackingContext, files: Sequence[FileRecord]) -> list[Chunk]:
    """Input order, one file at a time."""
    return ctx.pack_flat(files)


@register_strategy(ChunkingStrategy.SEMANTIC)
def semantic(ctx: PackingContext, files: Sequence[FileRecord]) -> list[Chunk]:
    """Connected groups from the dependency graph, packed whole when possible."""
    return ctx.pack_groups(semantic_groups(files, ctx.resolved))


@register_strategy(ChunkingStrategy.DIRECTORY_BASED)
def directory_based(ctx: PackingContext, files: Sequence[FileRecord]) -> list[Chunk]:
    """One chunk per directory (first-seen order) when it fits, otherwise file by file."""
    by_directory: dict[str, list[FileRecord]] = defaultdict(list)
    for f in files:
        by_directory[f.directory].append(f)
    chunks: list[Chunk] = []
    for group in by_directory.values():
        if ctx.group_tokens(group) <= ctx.max_tokens:
            chunks.append(ctx.finalize(group))
        else:
            chunks.extend(ctx.pack_flat(group))
    return chunks


@register_strategy(ChunkingStrategy.DEPENDENCY_AWARE)
def dependency_aware(ctx: PackingContext, files: Sequence[FileRecord]) -> list[Chunk]:
    """Dependency chains from each entry point, then whatever no chain reached."""
    by_path = {f.path: f for f in files}
    graph = restrict(ctx.resolved, list(by_path))
    processed: set[str] = set()
    chunks: list[Chunk] = []
    for entry in find_entry_points(graph, list(by_path)):
        if entry in processed:
            continue
        chain = walk_dependencies(entry, graph, skip=processed)
        processed.update(chain)
        chain_files = [by_path[p] for p in chain]
        if ctx.group_tokens(chain_files) <= ctx.max_tokens:
            chunks.append(ctx.finalize(chain_files))
        else:
            chunks.extend(ctx.pack_groups(semantic_groups(chain_files, graph)))
    remaining = [f for f in files if f.path not in processed]
    if remaining:
        logger.debug("chunking.unreached_files", files=len(remaining))
        chunks.extend(ctx.pack_flat(remaining))
    return chunks


def needs_rebalancing(chunk: Chunk, soft_target: int, options: ChunkingOptions) -> bool:
    return chunk.token_count < soft_target * options.rebalance_threshold and len(chunk.files) < options.rebalance_min_files


def merge_small_chunks(ctx: PackingContext, chunks: Sequence[Chunk], soft_target: int) -> list[Chunk]:
    """Merge a flagged chunk into its predecessor when both hold whole files and the sum fits the limit."""
    merged: list[Chunk] = []
    for chunk in chunks:
        prev = merged[-1] if merged else None
        if (
            prev is not None
            and not prev.is_partial
            and not chunk.is_partial
            and (needs_rebalancing(prev, soft_target, ctx.options) or needs_rebalancing(chunk, soft_target, ctx.options))
            and prev.token_count + chunk.token_count <= ctx.max_tokens
        ):
            merged[-1] = ctx.finalize([*prev.files, *chunk.files])
        else:
            merged.append(chunk)
    return merged


@register_strategy(ChunkingStrategy.SIZE_BALANCED)
def size_balanced(ctx: PackingContext, files: Sequence[FileRecord]) -> list[Chunk]:
    """Smallest files first against a soft target, flagging chunks left small."""
    soft_target = max(1, int(ctx.max_tokens * ctx.options.soft_target_ratio))
    ordered = sorted(files, key=ctx.file_tokens)
    chunks = ctx.pack_flat(ordered, budget=soft_target)
    if ctx.options.merge_small_chunks:
        chunks = merge_small_chunks(ctx, chunks, soft_target)
    return [
        chunk.model_copy(update={"metadata": chunk.metadata.model_copy(update={"needs_rebalancing": True})})
        if needs_rebalancing(chunk, soft_target, ctx.options)
        else chunk
        for chunk in chunks
    ]


# ------------------------------ Linking -------------------------------------


def link_chunks(chunks: Sequence[Chunk], files: Sequence[FileRecord], *, resolve: bool = True) -> list[Chunk]:
    """Attach positional boundaries and cross-chunk dependency references.

    A reference is recorded for every dependency of a chunk's file that lives
    in another chunk; for a fragmented file the first chunk holding it is used.
    """
    index = PathIndex(f.path for f in files)
    location: dict[str, str] = {}
    for chunk in chunks:
        for path in chunk.paths:
            location.setdefault(path, chunk.id)

    linked: list[Chunk] = []
    for position, chunk in enumerate(chunks):
        own = set(chunk.paths)
        related: list[str] = []
        references: dict[tuple[str, str, str], CrossReference] = {}
        for f in chunk.files:
            for target in extract_dependencies(f.content, f.extension):
                hit = resolve_dependency(target, f.path, index) if resolve else index.lookup_exact(target)
                if not hit or hit in own:
                    continue
                related.append(hit)
                to_chunk = location.get(hit)
                if to_chunk and to_chunk != chunk.id:
                    references.setdefault(
                        (f.path, hit, to_chunk),
                        CrossReference(from_chunk=chunk.id, to_chunk=to_chunk, file=f.path, referenced_file=hit),
                    )
        boundaries = ContextBoundaries(
            previous_chunk_id=chunks[position - 1].id if position > 0 else None,
            next_chunk_id=chunks[position + 1].id if position < len(chunks) - 1 else None,
            related_files_in_other_chunks=unique(related),
        )
        linked.append(
            chunk.model_copy(update={"context_boundaries": boundaries, "cross_references": list(references.values())}),
        )
    return linked


# ------------------------------ Entry point ---------------------------------


class ChunkPacker:
    """Splits a file set into ordered chunks that each fit a token budget.

    The token counter is injected, so any tokenizer honouring
    `TokenCounterProtocol` can be used for a model.
    """

    def __init__(
        self,
        token_counter: TokenCounterProtocol | None = None,
        *,
        graph_builder: DependencyGraphBuilder | None = None,
        metadata_generator: ChunkMetadataGenerator | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self.token_counter = token_counter or TokenCounter()
        self.graph_builder = graph_builder or DependencyGraphBuilder()
        self.metadata_generator = metadata_generator or ChunkMetadataGenerator()
        self.id_factory = id_factory or default_id_factory

    def pack(
        self,
        files: Sequence[FileRecord],
        options: ChunkingOptions | None = None,
        **overrides: Any,  # noqa: ANN401
    ) -> list[Chunk]:
        """Pack `files` into linked chunks.

        Args:
            files: the corpus, in the order chunks should follow.
            options: validated options; keyword `overrides` (strategy, max_tokens_per_chunk,
                model, ...) are applied on top and validated again.

        Raises:
            ConfigurationError: invalid options or duplicate file paths, before any packing.
            TokenizationError: the token counter returned an unusable count. Any other
                exception raised by the counter propagates unchanged.

        Returns:
            list[Chunk]: every file appears whole in exactly one chunk or as fragments.
        """
        options = self._resolve_options(options, overrides)
        paths = [f.path for f in files]
        if len(set(paths)) != len(paths):
            duplicates = sorted({p for p in paths if paths.count(p) > 1})
            raise ConfigurationError(field="files", value=duplicates, message="File paths must be unique")
        if not files:
            return []

        logger.info(
            "chunking.started",
            strategy=str(options.strategy),
            files=len(files),
            max_tokens=options.max_tokens_per_chunk,
            model=options.model,
        )
        graph = self.graph_builder.build(files)
        ctx = PackingContext(
            counter=self.token_counter,
            options=options,
            resolved=self.graph_builder.resolve(graph, files, resolve=options.resolve_dependencies),
            metadata=self.metadata_generator,
            id_factory=self.id_factory,
            file_tokens_by_path=self._measure(files, options),
        )
        chunks = STRATEGIES[options.strategy](ctx, files)
        chunks = link_chunks(chunks, files, resolve=options.resolve_dependencies)
        logger.info(
            "chunking.finished",
            strategy=str(options.strategy),
            chunks=len(chunks),
            total_tokens=sum(c.token_count for c in chunks),
        )
        return chunks

    def chunk_repository(
        self,
        files: Sequence[FileRecord],
        options: ChunkingOptions | None = None,
        **overrides: Any,  # noqa: ANN401
    ) -> ChunkingResult:
        """Pack `files` and describe the result with summaries and a navigation index."""
        options = self._resolve_options(options, overrides)
        chunks = self.pack(files, options)
        summaries = self.metadata_generator.summarize(chunks)
        return ChunkingResult(
            strategy=options.strategy,
            model=options.model,
            max_tokens_per_chunk=options.max_tokens_per_chunk,
            chunks=chunks,
            summaries=summaries,
            navigation=self.metadata_generator.navigation(chunks, summaries),
        )

    def _resolve_options(self, options: ChunkingOptions | None, overrides: dict[str, Any]) -> ChunkingOptions:
        if options is None:
            return ChunkingOptions.build(**overrides)
        if overrides:
            return ChunkingOptions.build(**{**options.model_dump(), **overrides})
        return options

    def _measure(self, files: Sequence[FileRecord], options: ChunkingOptions) -> dict[str, int]:
        """Whole-file token counts, collected in input order (optionally on a thread pool)."""
        model = options.model

        def measure(f: FileRecord) -> int:
            return _checked_count(self.token_counter.count_tokens(f.content, model), model)

        if options.max_workers and options.max_workers > 1 and len(files) > 1:
            with ThreadPoolExecutor(max_workers=options.max_workers) as pool:
                counts = list(pool.map(measure, files))
        else:
            counts = [measure(f) for f in files]
        return {f.path: n for f, n in zip(files, counts, strict=True)}
