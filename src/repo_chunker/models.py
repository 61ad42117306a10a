from __future__ import annotations

from collections import defaultdict
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, computed_field

from repo_chunker.config import ChunkingStrategy, FileRecord, PartialFileFragment

ChunkFile = PartialFileFragment | FileRecord


class ChunkMetadata(BaseModel):
    """Derived description of a chunk, recomputed whenever its file list changes."""

    model_config = ConfigDict(frozen=True)

    total_tokens: int = Field(..., ge=0)
    file_count: int = Field(..., ge=0)
    total_size: int = Field(default=0, ge=0, description="Sum of content sizes in bytes")
    languages: list[str] = Field(default_factory=list, description="Unique extensions, first-seen order")
    directories: list[str] = Field(default_factory=list, description="Unique directories, first-seen order")
    title: str = ""
    complexity_score: float = 0.0
    strategy: ChunkingStrategy | None = None
    needs_rebalancing: bool = False
    chunk_type: str = "files"
    original_file: str | None = None
    part: int | None = None
    total_parts: int | None = None


class ContextInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    entry_points: list[str] = Field(default_factory=list)
    exports: dict[str, list[str]] = Field(default_factory=dict)
    internal_dependencies: dict[str, list[str]] = Field(default_factory=dict)


class ContextBoundaries(BaseModel):
    model_config = ConfigDict(frozen=True)

    previous_chunk_id: str | None = None
    next_chunk_id: str | None = None
    related_files_in_other_chunks: list[str] = Field(default_factory=list)


class CrossReference(BaseModel):
    """A dependency edge from a file in one chunk to a file held by another chunk."""

    model_config = ConfigDict(frozen=True)

    from_chunk: str
    to_chunk: str
    reference_type: Literal["dependency"] = "dependency"
    file: str
    referenced_file: str


class Chunk(BaseModel):
    """An ordered group of files (or fragments) that fits a token budget.

    Frozen once finalized; the link pass returns copies carrying the boundaries
    and cross references.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    files: list[ChunkFile] = Field(default_factory=list)
    token_count: int = Field(..., ge=0)
    metadata: ChunkMetadata
    context_info: ContextInfo = Field(default_factory=ContextInfo)
    context_boundaries: ContextBoundaries | None = None
    cross_references: list[CrossReference] = Field(default_factory=list)

    @property
    def paths(self) -> list[str]:
        return [f.path for f in self.files]

    @property
    def is_partial(self) -> bool:
        return any(isinstance(f, PartialFileFragment) for f in self.files)

    def __str__(self) -> str:
        return f"Chunk {self.id}: {self.token_count} tokens, {len(self.files)} files"


class ChunkSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    chunk_id: str
    summary: str
    file_count: int
    total_tokens: int
    primary_languages: list[str] = Field(default_factory=list)
    primary_directories: list[str] = Field(default_factory=list)
    key_files: list[str] = Field(default_factory=list)


class ChunkIndexEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    chunk_id: str
    chunk_number: int = Field(..., ge=1)
    title: str
    summary: str = ""
    file_count: int
    token_count: int
    primary_directories: list[str] = Field(default_factory=list)
    previous_chunk: str | None = None
    next_chunk: str | None = None


class NavigationIndex(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_chunks: int
    chunk_index: list[ChunkIndexEntry] = Field(default_factory=list)
    cross_references: list[CrossReference] = Field(default_factory=list)


class ChunkingResult(BaseModel):
    """Everything a chunking request produces: the chunks, their summaries and the navigation index."""

    model_config = ConfigDict(frozen=True)

    strategy: ChunkingStrategy
    model: str
    max_tokens_per_chunk: int
    chunks: list[Chunk] = Field(default_factory=list)
    summaries: list[ChunkSummary] = Field(default_factory=list)
    navigation: NavigationIndex

    @computed_field
    @property
    def total_tokens(self) -> int:
        return sum(c.token_count for c in self.chunks)

    @computed_field
    @property
    def chunk_count(self) -> int:
        return len(self.chunks)


class FileStatistics(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: str
    tokens: int = Field(..., ge=0)
    size: int = Field(default=0, ge=0)
    lines: int = Field(default=0, ge=0)
    extension: str = ""

    @property
    def tokens_per_line(self) -> float:
        return self.tokens / self.lines if self.lines > 0 else 0.0

    @property
    def tokens_per_byte(self) -> float:
        return self.tokens / self.size if self.size > 0 else 0.0

    def __str__(self) -> str:
        return f"File: {self.path} ({self.tokens} tokens, {self.size} bytes, {self.lines} lines)"


class TokenStatistics(BaseModel):
    """Token usage of a file set measured against a model's context window."""

    model_config = ConfigDict(frozen=True)

    total_tokens: int = Field(..., ge=0)
    total_files: int = Field(..., ge=0)
    model: str
    model_limit: int
    exceeds_limit: bool
    file_stats: list[FileStatistics] = Field(default_factory=list)
    average_tokens_per_file: float = 0.0
    max_tokens_in_file: int = 0
    min_tokens_in_file: int = 0
    largest_file: str = ""
    smallest_file: str = ""

    @classmethod
    def create(cls, model: str, model_limit: int, file_stats: list[FileStatistics]) -> TokenStatistics:
        """Aggregate per-file statistics; ties on largest/smallest keep the first file."""
        total = sum(s.tokens for s in file_stats)
        largest = max(file_stats, key=lambda s: s.tokens, default=None)
        smallest = min(file_stats, key=lambda s: s.tokens, default=None)
        return cls(
            total_tokens=total,
            total_files=len(file_stats),
            model=model,
            model_limit=model_limit,
            exceeds_limit=total > model_limit,
            file_stats=file_stats,
            average_tokens_per_file=total / len(file_stats) if file_stats else 0.0,
            max_tokens_in_file=largest.tokens if largest else 0,
            min_tokens_in_file=smallest.tokens if smallest else 0,
            largest_file=largest.path if largest else "",
            smallest_file=smallest.path if smallest else "",
        )

    @computed_field
    @property
    def utilization_percentage(self) -> float:
        return (self.total_tokens / self.model_limit) * 100 if self.model_limit > 0 else 0.0

    @computed_field
    @property
    def remaining_tokens(self) -> int:
        return max(0, self.model_limit - self.total_tokens)

    def files_by_extension(self) -> dict[str, dict[str, float]]:
        groups: dict[str, list[int]] = defaultdict(list)
        for stat in self.file_stats:
            groups[stat.extension].append(stat.tokens)
        return {
            ext: {"count": len(tokens), "total_tokens": sum(tokens), "average_tokens": sum(tokens) / len(tokens)}
            for ext, tokens in groups.items()
        }

    def top_files(self, limit: int = 10) -> list[FileStatistics]:
        return sorted(self.file_stats, key=lambda s: s.tokens, reverse=True)[:limit]

    def __str__(self) -> str:
        status = "EXCEEDS LIMIT" if self.exceeds_limit else "Within limit"
        return f"Tokens: {self.total_tokens}/{self.model_limit} ({status}) across {self.total_files} files"
