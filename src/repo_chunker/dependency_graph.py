"""Heuristic, regex-based dependency extraction.

Extractors are registered per file extension. They return the raw import
targets found in a file (module names, relative paths, namespaces); those
targets are resolved against the corpus separately, and anything that does
not resolve simply ends a traversal.
"""

from __future__ import annotations

import posixpath
import re
from collections import deque
from functools import wraps
from typing import TYPE_CHECKING, Any

from repo_chunker.config import file_directory

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Sequence

    from repo_chunker.config import FileRecord

    ExtractorFn = Callable[[str], list[str]]

DependencyGraph = dict[str, list[str]]

DEPENDENCY_EXTRACTORS: dict[str, ExtractorFn] = {}
EXPORT_EXTRACTORS: dict[str, ExtractorFn] = {}

JS_EXTENSIONS = ["js", "jsx", "ts", "tsx", "mjs", "cjs", "vue"]
_RESOLVE_EXTENSIONS = ["", ".js", ".jsx", ".ts", ".tsx", ".mjs", ".cjs", ".vue", ".py", ".php", ".rb", ".rs", ".go"]


def _register(registry: dict[str, ExtractorFn], key: str | list[str]) -> Callable[[ExtractorFn], ExtractorFn]:
    def decorator(func: ExtractorFn) -> ExtractorFn:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:  # noqa: ANN401
            return func(*args, **kwargs)

        for k in key if isinstance(key, list) else [key]:
            registry[k] = wrapper
        return wrapper

    return decorator


def register_dependency_extractor(key: str | list[str]) -> Callable[[ExtractorFn], ExtractorFn]:
    """Decorator registering a dependency extractor for one or more extensions (without the dot).

    Args:
        key (str | list[str]): extension(s) the decorated function handles, e.g. "py" or ["js", "ts"].

    Returns:
        Callable[[ExtractorFn], ExtractorFn]: a decorator that records the function in
        `DEPENDENCY_EXTRACTORS` and returns it.
    """
    return _register(DEPENDENCY_EXTRACTORS, key)


def register_export_extractor(key: str | list[str]) -> Callable[[ExtractorFn], ExtractorFn]:
    """Decorator registering an export (public symbol) extractor for one or more extensions."""
    return _register(EXPORT_EXTRACTORS, key)


def unique(items: Iterable[str]) -> list[str]:
    """Drop duplicates and empty strings, keeping first-seen order."""
    return list(dict.fromkeys(i for i in items if i))


# ------------------------------ Dependency extractors -----------------------

_PHP_USE = re.compile(r"^\s*use\s+(?:function\s+|const\s+)?\\?([\\A-Za-z0-9_]+)", re.MULTILINE)
_PHP_REQUIRE = re.compile(r"(?:require|include)(?:_once)?\s*\(?\s*['\"]([^'\"]+)['\"]")
_JS_IMPORT_FROM = re.compile(r"import\s+[^;'\"]*?\s+from\s+['\"]([^'\"]+)['\"]", re.DOTALL)
_JS_IMPORT_BARE = re.compile(r"import\s+['\"]([^'\"]+)['\"]")
_JS_EXPORT_FROM = re.compile(r"export\s+[^;'\"]*?\s+from\s+['\"]([^'\"]+)['\"]", re.DOTALL)
_JS_REQUIRE = re.compile(r"(?:require|import)\s*\(\s*['\"]([^'\"]+)['\"]\s*\)")
_PY_IMPORT = re.compile(r"^\s*import\s+([A-Za-z0-9_.]+(?:\s*,\s*[A-Za-z0-9_.]+)*)", re.MULTILINE)
_PY_FROM = re.compile(r"^\s*from\s+([A-Za-z0-9_.]+)\s+import", re.MULTILINE)
_JAVA_IMPORT = re.compile(r"^\s*import\s+(?:static\s+)?([A-Za-z0-9_.]+)(?:\.\*)?\s*;", re.MULTILINE)
_GO_IMPORT_SINGLE = re.compile(r"^\s*import\s+(?:[A-Za-z_.]+\s+)?\"([^\"]+)\"", re.MULTILINE)
_GO_IMPORT_BLOCK = re.compile(r"^\s*import\s*\((.*?)\)", re.MULTILINE | re.DOTALL)
_GO_QUOTED = re.compile(r"\"([^\"]+)\"")
_RUST_USE = re.compile(r"^\s*(?:pub\s+)?use\s+([A-Za-z0-9_:]+)", re.MULTILINE)
_RUST_MOD = re.compile(r"^\s*(?:pub\s+)?mod\s+([A-Za-z0-9_]+)\s*;", re.MULTILINE)
_RUBY_REQUIRE = re.compile(r"^\s*require(?:_relative)?\s*\(?\s*['\"]([^'\"]+)['\"]", re.MULTILINE)
_C_INCLUDE = re.compile(r"^\s*#\s*include\s+\"([^\"]+)\"", re.MULTILINE)


@register_dependency_extractor("php")
def extract_php_dependencies(content: str) -> list[str]:
    """`use` namespaces and `require`/`include` paths."""
    return unique([*_PHP_USE.findall(content), *_PHP_REQUIRE.findall(content)])


@register_dependency_extractor(JS_EXTENSIONS)
def extract_javascript_dependencies(content: str) -> list[str]:
    """ES module imports and re-exports, side-effect imports, `require()` and dynamic `import()`."""
    return unique(
        [
            *_JS_IMPORT_FROM.findall(content),
            *_JS_IMPORT_BARE.findall(content),
            *_JS_EXPORT_FROM.findall(content),
            *_JS_REQUIRE.findall(content),
        ],
    )


@register_dependency_extractor("py")
def extract_python_dependencies(content: str) -> list[str]:
    """`import a.b[, c]` and `from a.b import x` targets, relative dots kept."""
    imports: list[str] = []
    for group in _PY_IMPORT.findall(content):
        imports.extend(part.strip() for part in group.split(","))
    return unique([*imports, *_PY_FROM.findall(content)])


@register_dependency_extractor("java")
def extract_java_dependencies(content: str) -> list[str]:
    return unique(_JAVA_IMPORT.findall(content))


@register_dependency_extractor("go")
def extract_go_dependencies(content: str) -> list[str]:
    found = list(_GO_IMPORT_SINGLE.findall(content))
    for block in _GO_IMPORT_BLOCK.findall(content):
        found.extend(_GO_QUOTED.findall(block))
    return unique(found)


@register_dependency_extractor("rs")
def extract_rust_dependencies(content: str) -> list[str]:
    return unique([*_RUST_USE.findall(content), *_RUST_MOD.findall(content)])


@register_dependency_extractor("rb")
def extract_ruby_dependencies(content: str) -> list[str]:
    return unique(_RUBY_REQUIRE.findall(content))


@register_dependency_extractor(["c", "h", "cc", "cpp", "hpp"])
def extract_c_dependencies(content: str) -> list[str]:
    """Quoted (project-local) `#include` targets; `<system>` headers are ignored."""
    return unique(_C_INCLUDE.findall(content))


# ------------------------------ Export extractors ---------------------------

_PHP_EXPORT = re.compile(r"\b(?:class|interface|trait|enum|function)\s+([A-Za-z0-9_]+)")
_JS_EXPORT = re.compile(
    r"export\s+(?:default\s+)?(?:async\s+)?(?:abstract\s+)?(?:class|function\*?|const|let|var|interface|type|enum)\s+([A-Za-z0-9_$]+)",
)
_PY_EXPORT = re.compile(r"^(?:async\s+)?(?:class|def)\s+([A-Za-z0-9_]+)", re.MULTILINE)
_GO_EXPORT = re.compile(r"^(?:func|type)\s+(?:\([^)]*\)\s*)?([A-Z][A-Za-z0-9_]*)", re.MULTILINE)
_JAVA_EXPORT = re.compile(
    r"^\s*public\s+(?:abstract\s+|final\s+|static\s+)*(?:class|interface|enum|record)\s+([A-Za-z0-9_]+)",
    re.MULTILINE,
)
_RUST_EXPORT = re.compile(r"^\s*pub\s+(?:async\s+)?(?:fn|struct|enum|trait|type|const|static)\s+([A-Za-z0-9_]+)", re.MULTILINE)


@register_export_extractor("php")
def extract_php_exports(content: str) -> list[str]:
    return unique(_PHP_EXPORT.findall(content))


@register_export_extractor(JS_EXTENSIONS)
def extract_javascript_exports(content: str) -> list[str]:
    return unique(_JS_EXPORT.findall(content))


@register_export_extractor("py")
def extract_python_exports(content: str) -> list[str]:
    """Top-level classes and functions."""
    return unique(_PY_EXPORT.findall(content))


@register_export_extractor("go")
def extract_go_exports(content: str) -> list[str]:
    return unique(_GO_EXPORT.findall(content))


@register_export_extractor("java")
def extract_java_exports(content: str) -> list[str]:
    return unique(_JAVA_EXPORT.findall(content))


@register_export_extractor("rs")
def extract_rust_exports(content: str) -> list[str]:
    return unique(_RUST_EXPORT.findall(content))


def extract_dependencies(content: str, extension: str) -> list[str]:
    """Raw dependency targets of `content`; [] for extensions without an extractor."""
    extractor = DEPENDENCY_EXTRACTORS.get(extension.lstrip(".").lower())
    return extractor(content) if extractor else []


def extract_exports(content: str, extension: str) -> list[str]:
    extractor = EXPORT_EXTRACTORS.get(extension.lstrip(".").lower())
    return extractor(content) if extractor else []


# ------------------------------ Resolution ----------------------------------


class PathIndex:
    """Lookup structure over the corpus paths used to resolve import targets.

    Besides exact paths it indexes every path suffix that starts at a
    directory boundary (`src/pkg/mod.py` -> `pkg/mod.py`, `mod.py`), the
    first path in corpus order winning a shared suffix.
    """

    def __init__(self, paths: Iterable[str]) -> None:
        self.paths: dict[str, None] = dict.fromkeys(paths)
        self._suffixes: dict[str, str] = {}
        for path in self.paths:
            parts = path.split("/")
            for i in range(1, len(parts)):
                self._suffixes.setdefault("/".join(parts[i:]), path)

    def __contains__(self, path: object) -> bool:
        return path in self.paths

    def lookup(self, candidate: str) -> str | None:
        candidate = candidate.strip("/")
        if not candidate:
            return None
        if candidate in self.paths:
            return candidate
        return self._suffixes.get(candidate)

    def lookup_exact(self, candidate: str) -> str | None:
        return candidate if candidate in self.paths else None


def _with_extensions(base: str, extension: str) -> list[str]:
    own = f".{extension}" if extension else ""
    exts = unique([own, *_RESOLVE_EXTENSIONS]) if own else _RESOLVE_EXTENSIONS
    candidates = [base + ext for ext in exts]
    candidates.extend(f"{base}/index{ext}" for ext in exts if ext)
    candidates.extend([f"{base}/__init__.py", f"{base}/mod.rs"])
    return candidates


def _resolve_relative(target: str, source: str, index: PathIndex, extension: str) -> str | None:
    base = posixpath.normpath(posixpath.join(file_directory(source), target))
    base = base.removeprefix("./")
    for candidate in _with_extensions(base, extension):
        found = index.lookup_exact(candidate)
        if found:
            return found
    return None


def _resolve_python(target: str, source: str, index: PathIndex) -> str | None:
    stripped = target.lstrip(".")
    dots = len(target) - len(stripped)
    module = stripped.replace(".", "/")
    if dots:
        directory = file_directory(source)
        for _ in range(dots - 1):
            directory = posixpath.dirname(directory) or "."
        base = posixpath.normpath(posixpath.join(directory, module)) if module else directory
        for candidate in (f"{base}.py", f"{base}/__init__.py"):
            found = index.lookup_exact(candidate.removeprefix("./"))
            if found:
                return found
        return None
    for candidate in (f"{module}.py", f"{module}/__init__.py"):
        found = index.lookup(candidate)
        if found:
            return found
    return None


def _resolve_namespace(target: str, index: PathIndex, extension: str) -> str | None:
    parts = [p for p in re.split(r"\\|::|\.", target) if p and p not in {"crate", "self", "super"}]
    if not parts:
        return None
    suffix = f".{extension}" if extension else ""
    # PSR-4 style roots differ from the namespace head (App\ -> app/ or src/), so retry without it.
    for start in range(min(2, len(parts))):
        rel = "/".join(parts[start:])
        for candidate in (rel + suffix, rel + "/mod.rs", rel.lower() + suffix):
            found = index.lookup(candidate)
            if found:
                return found
    return None


def resolve_dependency(target: str, source: str, index: PathIndex) -> str | None:
    """Map a raw import target of `source` to a corpus path, or None if it is external/unknown.

    Args:
        target (str): the identifier found by an extractor ("./util", "pkg.mod", "App\\\\Models\\\\User", ...)
        source (str): path of the importing file
        index (PathIndex): the corpus paths

    Returns:
        str | None: the resolved corpus path
    """
    target = target.strip()
    if not target:
        return None
    found = index.lookup_exact(target)
    if found:
        return found
    extension = posixpath.splitext(source)[1].lstrip(".").lower()
    if target.startswith(("./", "../")):
        return _resolve_relative(target, source, index, extension)
    if extension == "py":
        return _resolve_python(target, source, index)
    if posixpath.splitext(target)[1] and "\\" not in target and "::" not in target:
        # Target spelled as a file name ("util.h", "lib/helpers.php"): sibling first, then anywhere.
        found = _resolve_relative(f"./{target}", source, index, "") or index.lookup(target)
        if found:
            return found
    if "/" in target:
        for candidate in _with_extensions(target.strip("/"), extension):
            found = index.lookup(candidate)
            if found:
                return found
        return None
    return _resolve_namespace(target, index, extension)


class DependencyGraphBuilder:
    """Builds the raw and resolved dependency graphs of a file set."""

    def build(self, files: Sequence[FileRecord]) -> DependencyGraph:
        """Map every file path to the raw targets its content references."""
        return {f.path: extract_dependencies(f.content, f.extension) for f in files}

    def resolve(self, graph: DependencyGraph, files: Sequence[FileRecord], *, resolve: bool = True) -> DependencyGraph:
        """Restrict the graph to edges between corpus files.

        With `resolve=False` only targets spelled exactly like a corpus path count.
        Self edges are dropped.
        """
        index = PathIndex(f.path for f in files)
        resolved: DependencyGraph = {}
        for source, targets in graph.items():
            edges: list[str] = []
            for target in targets:
                hit = resolve_dependency(target, source, index) if resolve else index.lookup_exact(target)
                if hit and hit != source:
                    edges.append(hit)
            resolved[source] = unique(edges)
        return resolved


def find_entry_points(resolved: DependencyGraph, order: Sequence[str]) -> list[str]:
    """Files that no *other* file depends on, in `order`."""
    referenced = {target for source, targets in resolved.items() for target in targets if target != source}
    return [path for path in order if path not in referenced]


def walk_dependencies(start: str, resolved: DependencyGraph, skip: set[str] | None = None) -> list[str]:
    """Breadth-first list of `start` and everything reachable from it, leaving out `skip`.

    Targets absent from `resolved` terminate the walk.
    """
    skip = skip or set()
    if start in skip or start not in resolved:
        return []
    visited = {start}
    order = [start]
    queue = deque([start])
    while queue:
        current = queue.popleft()
        for target in resolved.get(current, []):
            if target in visited or target in skip or target not in resolved:
                continue
            visited.add(target)
            order.append(target)
            queue.append(target)
    return order
