from __future__ import annotations

from collections import Counter
from typing import TYPE_CHECKING

from repo_chunker.config import ENTRY_POINT_PATTERNS, KEY_FILE_PATTERNS
from repo_chunker.dependency_graph import (
    PathIndex,
    extract_dependencies,
    extract_exports,
    resolve_dependency,
    unique,
)
from repo_chunker.models import (
    ChunkIndexEntry,
    ChunkMetadata,
    ChunkSummary,
    ContextInfo,
    NavigationIndex,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

    from repo_chunker.config import ChunkingStrategy, FileRecord
    from repo_chunker.dependency_graph import DependencyGraph
    from repo_chunker.models import Chunk

KEY_FILE_EXPORT_THRESHOLD = 3
MAX_KEY_FILES = 5


def detect_languages(files: Sequence[FileRecord]) -> list[str]:
    """Unique non-empty extensions, first-seen order."""
    return unique(f.extension for f in files)


def extract_directories(files: Sequence[FileRecord]) -> list[str]:
    return unique(f.directory for f in files)


def primary_languages(files: Sequence[FileRecord], limit: int = 3) -> list[str]:
    """Extensions ordered by file count (ties keep first-seen order)."""
    counts = Counter(f.extension for f in files if f.extension)
    return [ext for ext, _ in counts.most_common(limit)]


def primary_directories(files: Sequence[FileRecord], limit: int = 3) -> list[str]:
    counts = Counter(f.directory for f in files)
    return [d for d, _ in counts.most_common(limit)]


def chunk_title(files: Sequence[FileRecord]) -> str:
    """Title from the dominant directory ("Services Module"), else the dominant language ("Py Files")."""
    directories = primary_directories(files, limit=1)
    if directories and directories[0] != ".":
        main_dir = directories[0].rsplit("/", 1)[-1]
        return f"{main_dir[:1].upper()}{main_dir[1:]} Module"
    languages = primary_languages(files, limit=1)
    if languages:
        return f"{languages[0].capitalize()} Files"
    return "Code Files"


def complexity_score(files: Sequence[FileRecord]) -> float:
    """`0.1 * total_lines + 10 * unique_languages + 2 * file_count`, rounded to 2 decimals."""
    total_lines = sum(f.content.count("\n") + 1 for f in files)
    return round(total_lines * 0.1 + len(detect_languages(files)) * 10 + len(files) * 2, 2)


def is_entry_point(file: FileRecord) -> bool:
    return any(pattern in file.name for pattern in ENTRY_POINT_PATTERNS)


def is_key_file(file: FileRecord) -> bool:
    """Many exports, an entry-point name, or a config/service/controller/model name."""
    return (
        len(extract_exports(file.content, file.extension)) > KEY_FILE_EXPORT_THRESHOLD
        or is_entry_point(file)
        or any(pattern in file.name for pattern in KEY_FILE_PATTERNS)
    )


class ChunkMetadataGenerator:
    """Describes chunks: metadata, context info, summaries and the navigation index."""

    def chunk_metadata(
        self,
        files: Sequence[FileRecord],
        token_count: int,
        strategy: ChunkingStrategy | None = None,
    ) -> ChunkMetadata:
        return ChunkMetadata(
            total_tokens=token_count,
            file_count=len(files),
            total_size=sum(f.size for f in files),
            languages=detect_languages(files),
            directories=extract_directories(files),
            title=chunk_title(files),
            complexity_score=complexity_score(files),
            strategy=strategy,
        )

    def context_info(self, files: Sequence[FileRecord], resolved: DependencyGraph | None = None) -> ContextInfo:
        """Entry points, exported symbols and dependencies that stay inside the chunk.

        Args:
            files: the chunk's files.
            resolved: resolved dependency graph of the whole corpus. When missing,
                dependencies are extracted from the chunk's own contents.
        """
        paths = unique(f.path for f in files)
        in_chunk = set(paths)
        exports: dict[str, list[str]] = {}
        internal: dict[str, list[str]] = {}
        index = PathIndex(paths)
        for f in files:
            symbols = extract_exports(f.content, f.extension)
            if symbols:
                exports[f.path] = unique([*exports.get(f.path, []), *symbols])
            if resolved is not None:
                targets = [t for t in resolved.get(f.path, []) if t in in_chunk]
            else:
                targets = [
                    hit
                    for target in extract_dependencies(f.content, f.extension)
                    if (hit := resolve_dependency(target, f.path, index)) and hit != f.path
                ]
            if targets:
                internal[f.path] = unique([*internal.get(f.path, []), *targets])
        return ContextInfo(
            entry_points=unique(f.path for f in files if is_entry_point(f)),
            exports=exports,
            internal_dependencies=internal,
        )

    def key_files(self, files: Sequence[FileRecord]) -> list[str]:
        return unique(f.path for f in files if is_key_file(f))[:MAX_KEY_FILES]

    def summary_text(self, files: Sequence[FileRecord]) -> str:
        """One-line description, e.g. "Contains 4 files primarily in py, md from src, docs directories"."""
        summary = f"Contains {len(files)} files"
        languages = primary_languages(files)
        if languages:
            summary += " primarily in " + ", ".join(languages[:3])
        directories = primary_directories(files)
        if directories:
            summary += " from " + ", ".join(directories[:2]) + " directories"
        return summary

    def summarize(self, chunks: Sequence[Chunk]) -> list[ChunkSummary]:
        return [
            ChunkSummary(
                chunk_id=chunk.id,
                summary=self.summary_text(chunk.files),
                file_count=len(chunk.files),
                total_tokens=chunk.metadata.total_tokens,
                primary_languages=primary_languages(chunk.files),
                primary_directories=primary_directories(chunk.files, limit=2),
                key_files=self.key_files(chunk.files),
            )
            for chunk in chunks
        ]

    def navigation(self, chunks: Sequence[Chunk], summaries: Sequence[ChunkSummary] | None = None) -> NavigationIndex:
        """Global index of the chunk sequence with previous/next links and all cross references."""
        by_id = {s.chunk_id: s.summary for s in summaries or []}
        entries = [
            ChunkIndexEntry(
                chunk_id=chunk.id,
                chunk_number=number,
                title=chunk.metadata.title or f"Chunk {number}",
                summary=by_id.get(chunk.id, ""),
                file_count=len(chunk.files),
                token_count=chunk.metadata.total_tokens,
                primary_directories=primary_directories(chunk.files),
                previous_chunk=chunks[number - 2].id if number > 1 else None,
                next_chunk=chunks[number].id if number < len(chunks) else None,
            )
            for number, chunk in enumerate(chunks, start=1)
        ]
        return NavigationIndex(
            total_chunks=len(chunks),
            chunk_index=entries,
            cross_references=[ref for chunk in chunks for ref in chunk.cross_references],
        )

