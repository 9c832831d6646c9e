"""End-to-end tests for the semfind CLI using the stub backends."""
from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest
from PIL import Image
from typer.testing import CliRunner

from semfind.cli import app

runner = CliRunner()


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    logger = logging.getLogger("semfind")
    for h in list(logger.handlers):
        logger.removeHandler(h)


@pytest.fixture
def workspace(tmp_path: Path):
    docs = tmp_path / "docs"
    docs.mkdir()
    (docs / "budget.txt").write_text("quarterly budget report", encoding="utf-8")
    (docs / "trip.md").write_text("holiday itinerary for the coast", encoding="utf-8")
    (docs / "script.py").write_text("print('hello world')", encoding="utf-8")
    pics = tmp_path / "pics"
    pics.mkdir()
    Image.new("RGB", (16, 8), (255, 0, 0)).save(pics / "red.png")
    Image.new("RGB", (8, 16), (0, 0, 255)).save(pics / "blue.jpg")

    cfg = tmp_path / "config.toml"
    result = runner.invoke(app, [
        "init", "--out", str(cfg),
        "--watch-dir", str(docs),
        "--index-dir", str(tmp_path / "idx"),
    ])
    assert result.exit_code == 0, result.output
    return tmp_path, cfg


class TestInit:
    def test_writes_loadable_config(self, workspace):
        tmp_path, cfg = workspace
        text = cfg.read_text(encoding="utf-8")
        assert "[indexer]" in text
        assert str(tmp_path / "docs") in text


class TestIndexAndQuery:
    def test_index_then_query(self, workspace):
        tmp_path, cfg = workspace
        result = runner.invoke(app, ["index", "--config", str(cfg), "--timeout", "30"])
        assert result.exit_code == 0, result.output
        assert "3 indexed" in result.output

        result = runner.invoke(app, ["query", "quarterly budget report", "--config", str(cfg)])
        assert result.exit_code == 0, result.output
        hits = json.loads(result.stdout)
        assert hits[0]["path"] == str(tmp_path / "docs" / "budget.txt")
        assert hits[0]["score"] == pytest.approx(1.0, abs=1e-5)
        assert hits[0]["file_type"] == "text"

    def test_query_filters(self, workspace):
        tmp_path, cfg = workspace
        runner.invoke(app, ["index", "--config", str(cfg)])
        result = runner.invoke(app, [
            "query", "hello", "--config", str(cfg),
            "--file-type", "code", "--min-score=-1", "--k", "5",
        ])
        assert result.exit_code == 0, result.output
        hits = json.loads(result.stdout)
        assert [h["name"] for h in hits] == ["script.py"]

    def test_query_bad_sort_key(self, workspace):
        _, cfg = workspace
        result = runner.invoke(app, ["query", "x", "--config", str(cfg), "--sort", "colour"])
        assert result.exit_code != 0

    def test_similar(self, workspace):
        tmp_path, cfg = workspace
        runner.invoke(app, ["index", "--config", str(cfg)])
        source = str(tmp_path / "docs" / "budget.txt")
        result = runner.invoke(app, ["similar", source, "--config", str(cfg), "--min-score=-1"])
        assert result.exit_code == 0, result.output
        paths = [h["path"] for h in json.loads(result.stdout)]
        assert source not in paths
        assert len(paths) == 2

    def test_similar_unknown_file(self, workspace):
        tmp_path, cfg = workspace
        result = runner.invoke(app, ["similar", str(tmp_path / "nope.txt"), "--config", str(cfg)])
        assert result.exit_code == 1

    def test_status(self, workspace):
        tmp_path, cfg = workspace
        runner.invoke(app, ["index", "--config", str(cfg)])
        result = runner.invoke(app, ["status", "--config", str(cfg)])
        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["total_files"] == 3
        assert data["files_with_embeddings"] == 3
        assert data["schema_version"] >= 1
        assert data["indexed_images"] == 0

    def test_missing_config(self, tmp_path):
        result = runner.invoke(app, ["status", "--config", str(tmp_path / "absent.toml")])
        assert result.exit_code != 0


class TestVisual:
    def test_visual_index_and_query(self, workspace):
        tmp_path, cfg = workspace
        result = runner.invoke(app, ["visual-index", str(tmp_path / "pics"), "--config", str(cfg)])
        assert result.exit_code == 0, result.output
        assert "Indexed 2 images" in result.output

        result = runner.invoke(app, ["visual-query", "a red square", "--config", str(cfg), "--min-score=-1"])
        assert result.exit_code == 0, result.output
        hits = json.loads(result.stdout)
        assert {h["name"] for h in hits} == {"red.png", "blue.jpg"}
        red = next(h for h in hits if h["name"] == "red.png")
        assert (red["width"], red["height"]) == (16, 8)

    def test_visual_similar(self, workspace):
        tmp_path, cfg = workspace
        runner.invoke(app, ["visual-index", str(tmp_path / "pics"), "--config", str(cfg)])
        red = str(tmp_path / "pics" / "red.png")
        for extra in ([], ["--indexed"]):
            result = runner.invoke(app, ["visual-similar", red, "--config", str(cfg), *extra])
            assert result.exit_code == 0, result.output
            names = [h["name"] for h in json.loads(result.stdout)]
            assert "red.png" not in names
