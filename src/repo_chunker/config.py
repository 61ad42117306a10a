from __future__ import annotations

import posixpath
from enum import StrEnum, auto
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, computed_field


class ChunkingStrategy(StrEnum):
    """Heuristic used to group files into token-bounded chunks."""

    SEMANTIC = auto()
    FILE_BASED = auto()
    DIRECTORY_BASED = auto()
    DEPENDENCY_AWARE = auto()
    SIZE_BALANCED = auto()


class EstimationMethod(StrEnum):
    """Fallback estimator used when no precise tokenizer is available for a model.

    `MIXED` weights the word estimate at 60% and the character estimate at 40%;
    it is the default because it tracks real tokenizers more closely than
    either estimate on its own.
    """

    WORDS = auto()
    CHARACTERS = auto()
    MIXED = auto()


WORDS_PER_TOKEN = 0.75
CHARS_PER_TOKEN = 4
MIXED_WORD_WEIGHT = 0.6
MIXED_CHAR_WEIGHT = 0.4

DEFAULT_MODEL = "gpt-4"
DEFAULT_MODEL_LIMIT = 100_000
DEFAULT_MAX_TOKENS_PER_CHUNK = 100_000
DEFAULT_ENCODING = "cl100k_base"

MODEL_ENCODINGS: dict[str, str] = {
    "gpt-4": "cl100k_base",
    "gpt-4-turbo": "cl100k_base",
    "gpt-4o": "o200k_base",
    "gpt-3.5-turbo": "cl100k_base",
    "text-davinci-003": "p50k_base",
    "claude-3-opus": "cl100k_base",
    "claude-3-sonnet": "cl100k_base",
    "claude-3-haiku": "cl100k_base",
}

MODEL_LIMITS: dict[str, int] = {
    "gpt-4": 128_000,
    "gpt-4-turbo": 128_000,
    "gpt-4o": 128_000,
    "gpt-3.5-turbo": 16_385,
    "text-davinci-003": 4_097,
    "claude-3-opus": 200_000,
    "claude-3-sonnet": 200_000,
    "claude-3-haiku": 200_000,
}

EXT2LANG: dict[str, str] = {
    "bash": "bash",
    "c": "c",
    "cc": "cpp",
    "cjs": "javascript",
    "cpp": "cpp",
    "css": "css",
    "go": "go",
    "h": "c",
    "hpp": "cpp",
    "html": "html",
    "java": "java",
    "js": "javascript",
    "json": "json",
    "jsx": "javascript",
    "md": "markdown",
    "mjs": "javascript",
    "php": "php",
    "py": "python",
    "rb": "ruby",
    "rs": "rust",
    "sh": "bash",
    "sql": "sql",
    "toml": "toml",
    "ts": "typescript",
    "tsx": "typescript",
    "txt": "text",
    "vue": "vue",
    "xml": "xml",
    "yaml": "yaml",
    "yml": "yaml",
}

DEFAULT_EXCLUDES = {
    ".git",
    ".venv",
    "venv",
    "env",
    "__pycache__",
    ".mypy_cache",
    ".ruff_cache",
    ".pytest_cache",
    ".ipynb_checkpoints",
    "node_modules",
    "vendor",
    "dist",
    "build",
    ".DS_Store",
    ".idea",
    ".vscode",
}

ENTRY_POINT_PATTERNS = ("index", "main", "app", "bootstrap", "__init__")
KEY_FILE_PATTERNS = ("config", "service", "controller", "model")

OVERSIZED_FILE_CHUNK = "oversized_file_chunk"


def file_extension(path: str) -> str:
    """Return the lower-cased extension of `path` without its leading dot ("" if none)."""
    suffix = posixpath.splitext(posixpath.basename(path))[1]
    return suffix[1:].lower()


def file_directory(path: str) -> str:
    """Return the POSIX directory of `path`, "." for top-level files."""
    return posixpath.dirname(path.replace("\\", "/")) or "."


class FileRecord(BaseModel):
    """A text file of the corpus being chunked.

    Attributes:
        path: Path relative to the repository root, POSIX separators. Unique within a corpus.
        content: Full text content.
        extension: Extension without the leading dot (e.g. "py").
        size: UTF-8 byte length of `content`.
        lines: Number of lines (`content.count("\\n") + 1`).
    """

    model_config = ConfigDict(frozen=True)

    path: str = Field(..., min_length=1, description="File path relative to repository root")
    content: str = Field(default="", description="File text content")
    extension: str = Field(default="", description="File extension without the dot")
    size: int = Field(default=0, ge=0, description="Content size in bytes")
    lines: int = Field(default=1, ge=0, description="Number of lines")

    @classmethod
    def from_content(cls, path: str, content: str, extension: str | None = None) -> FileRecord:
        """Build a record, deriving extension, size and line count from `content`."""
        path = path.replace("\\", "/")
        return cls(
            path=path,
            content=content,
            extension=file_extension(path) if extension is None else extension.lstrip(".").lower(),
            size=len(content.encode("utf-8")),
            lines=content.count("\n") + 1,
        )

    @computed_field
    @property
    def directory(self) -> str:
        """Containing directory, "." for files at the repository root."""
        return file_directory(self.path)

    @property
    def name(self) -> str:
        return posixpath.basename(self.path)

    @property
    def language(self) -> str:
        """Suggested code fence language for the extension, "" when unknown."""
        return EXT2LANG.get(self.extension, "")


class PartialFileFragment(FileRecord):
    """A piece of a file too large to fit a single chunk.

    `path` keeps the original path so the fragment groups with its file;
    fragments of one file concatenated in `part_index` order give back the
    original content.
    """

    original_path: str = Field(..., description="Path of the file the fragment was cut from")
    part_index: int = Field(..., ge=1, description="1-based position of the fragment")
    total_parts: int = Field(..., ge=1, description="Number of fragments of the original file")
    is_partial: Literal[True] = True

    @classmethod
    def from_record(
        cls,
        record: FileRecord,
        content: str,
        part_index: int,
        total_parts: int,
    ) -> PartialFileFragment:
        """Cut a fragment of `record` holding `content`."""
        return cls(
            path=record.path,
            content=content,
            extension=record.extension,
            size=len(content.encode("utf-8")),
            lines=content.count("\n") + 1,
            original_path=record.path,
            part_index=part_index,
            total_parts=total_parts,
        )
