from __future__ import annotations

import io
import json
import re
from typing import TYPE_CHECKING

from repo_chunker.config import PartialFileFragment
from repo_chunker.file_manipulation import build_tree_lines

if TYPE_CHECKING:
    from repo_chunker.models import Chunk, ChunkingResult, TokenStatistics


def build_json(result: ChunkingResult) -> str:
    """Serialize a whole chunking result as one JSON document."""
    return result.model_dump_json(indent=2) + "\n"


def build_jsonl(result: ChunkingResult) -> str:
    """Serialize a chunking result as JSON lines.

    One line per chunk (with its summary under `"summary"`), in chunk order,
    followed by a final line holding the navigation index.

    Args:
        result (ChunkingResult): the chunks to write

    Returns:
        str: the JSONL document, newline terminated
    """
    summaries = {s.chunk_id: s for s in result.summaries}
    buf = io.StringIO()
    for number, chunk in enumerate(result.chunks, start=1):
        item = {"record": "chunk", "chunk_number": number, **chunk.model_dump(mode="json")}
        summary = summaries.get(chunk.id)
        if summary is not None:
            item["summary"] = summary.model_dump(mode="json")
        buf.write(json.dumps(item, ensure_ascii=False) + "\n")
    navigation = {
        "record": "navigation",
        "strategy": str(result.strategy),
        "model": result.model,
        "max_tokens_per_chunk": result.max_tokens_per_chunk,
        "total_tokens": result.total_tokens,
        **result.navigation.model_dump(mode="json"),
    }
    buf.write(json.dumps(navigation, ensure_ascii=False) + "\n")
    return buf.getvalue()


def code_fence(body: str) -> str:
    """Backtick fence longer than any backtick run inside `body` (at least three)."""
    longest = max((len(m) for m in re.findall(r"`+", body)), default=0)
    return "`" * max(3, longest + 1)


def chunk_heading(chunk: Chunk, number: int, total: int) -> str:
    title = chunk.metadata.title or f"{chunk.metadata.file_count} files"
    return f"## Chunk {number}/{total}: {title}"


def build_markdown(result: ChunkingResult, root_name: str = "repository") -> str:
    """Render a chunking result as one markdown document.

    Each chunk gets a header (title, token count, neighbour ids), a tree of the
    files it holds, the dependencies it shares with other chunks and one fenced
    block per file or fragment.

    Args:
        result (ChunkingResult): the chunks to render
        root_name (str): label of the root of every structure tree

    Returns:
        str: the markdown document, newline terminated
    """
    out = io.StringIO()
    out.write("# Repository Chunks for LLM\n")
    out.write(f"strategy={result.strategy} model={result.model} max_tokens_per_chunk={result.max_tokens_per_chunk}\n")
    out.write(f"chunks={result.chunk_count} total_tokens={result.total_tokens}\n\n")

    for number, chunk in enumerate(result.chunks, start=1):
        out.write(chunk_heading(chunk, number, result.chunk_count) + "\n")
        out.write(f"id={chunk.id} tokens={chunk.token_count} files={len(chunk.files)}\n")
        boundaries = chunk.context_boundaries
        if boundaries is not None:
            out.write(f"previous={boundaries.previous_chunk_id or '-'} next={boundaries.next_chunk_id or '-'}\n")
        if chunk.metadata.original_file is not None:
            out.write(f"part={chunk.metadata.part}/{chunk.metadata.total_parts} of {chunk.metadata.original_file}\n")
        out.write("\n### Structure\n```text\n")
        out.write("\n".join(build_tree_lines(root_name, chunk.paths)))
        out.write("\n```\n\n")

        if chunk.cross_references:
            out.write("### Cross references\n")
            for ref in chunk.cross_references:
                out.write(f"- {ref.file} -> {ref.referenced_file} (chunk {ref.to_chunk})\n")
            out.write("\n")

        for f in chunk.files:
            suffix = f" (part {f.part_index}/{f.total_parts})" if isinstance(f, PartialFileFragment) else ""
            body = f.content.rstrip("\n")
            fence = code_fence(body)
            out.write(f"### {f.path}{suffix}\n")
            out.write(f"{fence}{f.language or 'text'}\n{body}\n{fence}\n\n")

    return out.getvalue().rstrip() + "\n"


def build_stats_report(stats: TokenStatistics, top: int = 10) -> str:
    """Plain-text token report: totals, per-extension breakdown and the largest files."""
    out = io.StringIO()
    out.write(f"{stats}\n")
    out.write(f"model={stats.model} utilization={stats.utilization_percentage:.1f}% remaining={stats.remaining_tokens}\n")
    if stats.total_files:
        out.write(f"average_tokens_per_file={stats.average_tokens_per_file:.1f}\n")
    by_extension = stats.files_by_extension()
    if by_extension:
        out.write("\n## By extension\n")
        for ext, row in sorted(by_extension.items(), key=lambda kv: -kv[1]["total_tokens"]):
            out.write(f"{ext or '(none)'}: {int(row['count'])} files, {int(row['total_tokens'])} tokens\n")
    largest = stats.top_files(top)
    if largest:
        out.write("\n## Largest files\n")
        for stat in largest:
            out.write(f"{stat.tokens:>8}  {stat.path}\n")
    return out.getvalue()
