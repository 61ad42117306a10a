from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from repo_chunker import cli
from repo_chunker.config import ChunkingStrategy

if TYPE_CHECKING:
    from pytest_mock import MockerFixture


def make_repo(root: Path) -> list[Path]:
    files = {
        "src/app.py": "from src import models\nimport src.db\n\ndef run():\n    return 1\n",
        "src/db.py": "class Database:\n    pass\n",
        "docs/guide.md": "Usage notes. " * 20,
    }
    paths = []
    for rel, content in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        paths.append(path.resolve())
    return paths


@pytest.mark.integration
def test_parse_args_reads_env_defaults() -> None:
    settings = cli.parse_args(
        ["--output", "out.jsonl"],
        env={"strategy": "directory_based", "max_tokens": "5000", "model": "gpt-4o"},
    )

    assert settings.command == "chunk"
    assert settings.strategy == ChunkingStrategy.DIRECTORY_BASED
    assert settings.max_tokens == 5000
    assert settings.model == "gpt-4o"


@pytest.mark.integration
def test_parse_args_flags_win_over_env() -> None:
    settings = cli.parse_args(["stats", "--max-tokens", "42"], env={"max_tokens": "5000"})

    assert settings.command == "stats"
    assert settings.max_tokens == 42


@pytest.mark.integration
def test_main_uses_git_listing_when_available(tmp_path: Path, mocker: MockerFixture) -> None:
    files = make_repo(tmp_path)
    listing = mocker.patch.object(cli, "list_repository_files", return_value=files)
    output = tmp_path / "out.jsonl"

    exit_code = cli.main(["--repo", str(tmp_path), "--output", str(output), "--no-precise"])

    assert exit_code == 0
    listing.assert_called_once_with(tmp_path.resolve(), use_git=True)
    lines = output.read_text(encoding="utf-8").splitlines()
    assert json.loads(lines[-1])["record"] == "navigation"
    chunked = {f["path"] for line in lines[:-1] for f in json.loads(line)["files"]}
    assert chunked == {"src/app.py", "src/db.py", "docs/guide.md"}


@pytest.mark.integration
def test_main_writes_json_document(tmp_path: Path) -> None:
    make_repo(tmp_path)
    output = tmp_path / "chunks.json"

    exit_code = cli.main(
        [
            "--repo",
            str(tmp_path),
            "--output",
            str(output),
            "--no-git",
            "--no-precise",
            "--strategy",
            "size_balanced",
            "--max-tokens",
            "40",
            "--exclude-glob",
            "docs/*",
        ],
    )

    assert exit_code == 0
    data = json.loads(output.read_text(encoding="utf-8"))
    assert data["strategy"] == "size_balanced"
    assert data["max_tokens_per_chunk"] == 40
    assert all(chunk["token_count"] <= 40 for chunk in data["chunks"])
    assert {f["path"] for chunk in data["chunks"] for f in chunk["files"]} == {"src/app.py", "src/db.py"}


@pytest.mark.integration
def test_main_stats_prints_report(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    make_repo(tmp_path)

    exit_code = cli.main(["stats", "--repo", str(tmp_path), "--no-git", "--no-precise", "--model", "gpt-3.5-turbo"])

    assert exit_code == 0
    out = capsys.readouterr().out
    assert "/16385" in out
    assert "across 3 files" in out


@pytest.mark.integration
def test_main_reports_configuration_errors(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    make_repo(tmp_path)

    exit_code = cli.main(["--repo", str(tmp_path), "--no-git", "--no-precise", "--max-tokens", "0"])

    assert exit_code == 2
    assert "max_tokens_per_chunk" in capsys.readouterr().err


@pytest.mark.integration
def test_main_applies_config_file(tmp_path: Path) -> None:
    make_repo(tmp_path)
    config = tmp_path / "chunker.yaml"
    config.write_text("tokenizer:\n  model_limits:\n    local-llm: 2048\nchunking:\n  resolve_dependencies: false\n")
    output = tmp_path / "out.json"

    exit_code = cli.main(
        [
            "--repo",
            str(tmp_path),
            "--no-git",
            "--no-precise",
            "--config",
            str(config),
            "--model",
            "local-llm",
            "--include-glob",
            "src/*",
            "--output",
            str(output),
        ],
    )

    assert exit_code == 0
    data = json.loads(output.read_text(encoding="utf-8"))
    assert data["model"] == "local-llm"
    assert data["navigation"]["cross_references"] == []


@pytest.mark.integration
@pytest.mark.parametrize(
    ("variable", "value"),
    [("REPO_CHUNKER_STRATEGY", "round_robin"), ("REPO_CHUNKER_ESTIMATION_METHOD", "syllables")],
)
def test_main_reports_invalid_environment_defaults(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
    variable: str,
    value: str,
) -> None:
    make_repo(tmp_path)
    monkeypatch.setenv(variable, value)

    exit_code = cli.main(["--repo", str(tmp_path), "--no-git", "--no-precise"])

    assert exit_code == 2
    err = capsys.readouterr().err
    assert err.startswith("error: ")
    assert value in err


@pytest.mark.integration
def test_main_reports_missing_config_file(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    make_repo(tmp_path)

    exit_code = cli.main(["--repo", str(tmp_path), "--no-git", "--no-precise", "--config", str(tmp_path / "nope.yaml")])

    assert exit_code == 2
    assert "nope.yaml" in capsys.readouterr().err


@pytest.mark.integration
def test_main_reports_malformed_config_file(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    make_repo(tmp_path)
    config = tmp_path / "chunker.yaml"
    config.write_text("tokenizer: [unclosed\n", encoding="utf-8")

    exit_code = cli.main(["--repo", str(tmp_path), "--no-git", "--no-precise", "--config", str(config)])

    assert exit_code == 2
    assert "Invalid YAML" in capsys.readouterr().err


@pytest.mark.integration
def test_main_writes_markdown_for_md_output(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    make_repo(repo)
    output = tmp_path / "chunks.md"

    exit_code = cli.main(
        ["--repo", str(repo), "--output", str(output), "--no-git", "--no-precise", "--strategy", "directory_based"],
    )

    assert exit_code == 0
    text = output.read_text(encoding="utf-8")
    assert text.startswith("# Repository Chunks for LLM\n")
    assert "strategy=directory_based" in text
    assert "### src/db.py\n```python\nclass Database:\n    pass\n```" in text
    assert "```text\nrepo\n" in text


@pytest.mark.integration
def test_output_format_from_flag_and_suffix() -> None:
    assert cli.output_format(cli.parse_args(["--output", "x.md"], env={})) == "markdown"
    assert cli.output_format(cli.parse_args(["--output", "x.json"], env={})) == "json"
    assert cli.output_format(cli.parse_args(["--output", "x.json", "--format", "markdown"], env={})) == "markdown"
    assert cli.output_format(cli.parse_args([], env={})) == "jsonl"
