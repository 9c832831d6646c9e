from __future__ import annotations

# Suppress harmless multiprocessing resource tracker warnings (common on macOS)
import warnings
warnings.filterwarnings("ignore", message="resource_tracker: There appear to be.*leaked semaphore")

import dataclasses
import json
import logging
import os
from pathlib import Path
import time

import typer

from .config import AppConfig
from .embeddings.image import ImageEmbeddingProvider
from .embeddings.text import TextEmbeddingProvider
from .embeddings.base import IMAGE_EMBEDDING_DIMENSION, TEXT_EMBEDDING_DIMENSION
from .errors import SemfindError
from .indexer.indexer import Indexer
from .models import FileType, SearchOptions, SearchResults, SortKey
from .search.semantic import SemanticSearchService
from .search.visual import IMAGE_TABLE, VisualSearchService
from .store.vector_store import VectorStore

app = typer.Typer(add_completion=False, no_args_is_help=True)


def _setup_logging(log_file: str | None, log_level: str, verbose: bool) -> None:
    level = logging.DEBUG if verbose else getattr(logging, log_level.upper(), logging.INFO)

    fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"

    handlers: list[logging.Handler] = []
    console = logging.StreamHandler()
    console.setFormatter(logging.Formatter(fmt, datefmt))
    handlers.append(console)

    if log_file:
        from logging.handlers import RotatingFileHandler
        file_handler = RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5)
        file_handler.setFormatter(logging.Formatter(fmt, datefmt))
        handlers.append(file_handler)

    logger = logging.getLogger("semfind")
    logger.setLevel(level)
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()
    for h in handlers:
        logger.addHandler(h)


def _cfg(config: str) -> AppConfig:
    try:
        return AppConfig.from_toml(config)
    except FileNotFoundError:
        raise typer.BadParameter(f"Config file not found: {config}. Run `semfind init` first.")
    except ValueError as e:
        raise typer.BadParameter(str(e))


def _fail(message: str) -> None:
    typer.echo(f"Error: {message}", err=True)
    raise typer.Exit(code=1)


def _text_provider(cfg: AppConfig) -> TextEmbeddingProvider:
    provider = TextEmbeddingProvider.create(cfg.embeddings)
    try:
        provider.load()
    except SemfindError as e:
        _fail(e.message)
    return provider


def _image_provider(cfg: AppConfig) -> ImageEmbeddingProvider:
    provider = ImageEmbeddingProvider.create(cfg.image_embeddings)
    try:
        provider.load()
    except SemfindError as e:
        _fail(e.message)
    return provider


def _text_store(cfg: AppConfig) -> VectorStore:
    return VectorStore.open_path(cfg.store_path, dims=TEXT_EMBEDDING_DIMENSION)


def _image_store(cfg: AppConfig) -> VectorStore:
    return VectorStore.open_path(cfg.image_store_path, dims=IMAGE_EMBEDDING_DIMENSION, table=IMAGE_TABLE)


def _options(cfg: AppConfig, k: int | None, min_score: float | None, directory: str,
             file_type: str, sort: str, ascending: bool) -> SearchOptions:
    try:
        ftype = FileType[file_type.upper()] if file_type else None
    except KeyError:
        raise typer.BadParameter(f"Unknown file type: {file_type}")
    try:
        sort_by = SortKey(sort)
    except ValueError:
        raise typer.BadParameter(f"Unknown sort key: {sort}")
    return SearchOptions(
        max_results=k if k is not None else cfg.search.max_results,
        min_score=min_score if min_score is not None else cfg.search.min_score,
        directory=os.path.abspath(directory) if directory else None,
        file_type=ftype,
        sort_by=sort_by,
        descending=not ascending,
    )


def _emit(results: SearchResults) -> None:
    if not results.success:
        _fail(results.error_message)
    typer.echo(json.dumps([h.to_dict() for h in results.hits], indent=2))


@app.command()
def init(out: str = typer.Option("config.toml", help="Write example config to this path"),
         watch_dir: str = typer.Option("~/Documents", help="Directory to index"),
         index_dir: str = typer.Option("~/.semfind", help="Directory for the index databases")):
    """Write a starter config.toml."""
    outp = Path(out)
    outp.write_text(f"""[store]
path = "{index_dir}/index.db"
image_path = "{index_dir}/images.db"

[embeddings]
backend = "stub"            # stub | sentence_transformers
model_path = ""             # local sentence-transformers model directory
num_threads = 0
use_gpu = false
batch_size = 32

[image_embeddings]
backend = "stub"            # stub | clip
model_path = ""             # local CLIP model directory (e.g. clip-ViT-B-32)
image_size = 224

[indexer]
watch_dirs = ["{watch_dir}"]
exclude_patterns = []       # appended to the built-in excludes
index_hidden_files = false
recursive = true
max_file_size_mb = 10
batch_size = 32
delay_between_batches_ms = 10
enable_watching = true

[search]
max_results = 20
min_score = 0.0
""", encoding="utf-8")
    typer.echo(f"Wrote {outp}")


@app.command()
def index(config: str = typer.Option("config.toml"),
          timeout: float = typer.Option(None, help="Give up waiting after this many seconds"),
          log_file: str = typer.Option(None, "--log-file", "-l", help="Log file path"),
          log_level: str = typer.Option("INFO", "--log-level", help="Log level: DEBUG, INFO, WARNING, ERROR"),
          verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose (DEBUG) logging")):
    """Crawl the configured directories once and exit when idle."""
    _setup_logging(log_file, log_level, verbose)
    cfg = _cfg(config)
    provider = _text_provider(cfg)
    with _text_store(cfg) as store:
        idx = Indexer(dataclasses.replace(cfg.indexer, enable_watching=False), store=store, embedder=provider)
        idx.start()
        try:
            finished = idx.wait_until_idle(timeout)
        finally:
            idx.close()
        stats = idx.get_stats()
        typer.echo(
            f"Index complete: {stats.files_indexed} indexed, {stats.files_skipped} skipped "
            f"in {stats.elapsed_time_sec:.1f}s ({store.count()} files in store)"
        )
        if not finished:
            typer.echo("Warning: timed out before the queue drained", err=True)
    provider.unload()


@app.command()
def watch(config: str = typer.Option("config.toml"),
          log_file: str = typer.Option(None, "--log-file", "-l", help="Log file path"),
          log_level: str = typer.Option("INFO", "--log-level", help="Log level: DEBUG, INFO, WARNING, ERROR"),
          verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose (DEBUG) logging")):
    """Index, then keep the store in sync with filesystem changes until Ctrl+C."""
    _setup_logging(log_file, log_level, verbose)
    cfg = _cfg(config)
    provider = _text_provider(cfg)
    with _text_store(cfg) as store:
        idx = Indexer(dataclasses.replace(cfg.indexer, enable_watching=True), store=store, embedder=provider)
        if not idx.start():
            _fail("Indexer failed to start")
        typer.echo("Watching for changes (Ctrl+C to stop)...")
        try:
            while True:
                time.sleep(1.0)
        except KeyboardInterrupt:
            typer.echo("Stopping...")
        finally:
            idx.close()
    provider.unload()


@app.command()
def query(q: str,
          config: str = typer.Option("config.toml"),
          k: int = typer.Option(None, help="Maximum results (default: from config)"),
          min_score: float = typer.Option(None, help="Drop hits below this similarity"),
          path: str = typer.Option("", help="Restrict to this directory"),
          file_type: str = typer.Option("", help="Restrict to a file type (text, code, ...)"),
          sort: str = typer.Option("score", help="score | name | size | modified | path"),
          ascending: bool = typer.Option(False, help="Sort ascending")):
    """Natural-language search over indexed files."""
    cfg = _cfg(config)
    opts = _options(cfg, k, min_score, path, file_type, sort, ascending)
    provider = _text_provider(cfg)
    with _text_store(cfg) as store:
        _emit(SemanticSearchService(provider, store).query(q, opts))


@app.command()
def similar(file: str,
            config: str = typer.Option("config.toml"),
            k: int = typer.Option(None, help="Maximum results (default: from config)"),
            min_score: float = typer.Option(None, help="Drop hits below this similarity"),
            path: str = typer.Option("", help="Restrict to this directory")):
    """Files similar to an already-indexed file."""
    cfg = _cfg(config)
    opts = _options(cfg, k, min_score, path, "", "score", False)
    with _text_store(cfg) as store:
        _emit(SemanticSearchService(None, store).similar_to_file(os.path.abspath(file), opts))


@app.command(name="visual-index")
def visual_index(directory: str, config: str = typer.Option("config.toml"),
                 verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose (DEBUG) logging")):
    """Embed every image under a directory into the image store."""
    _setup_logging(None, "INFO", verbose)
    cfg = _cfg(config)
    provider = _image_provider(cfg)
    with _image_store(cfg) as store:
        n = VisualSearchService(provider, store).index_directory(os.path.abspath(directory))
        typer.echo(f"Indexed {n} images ({store.count()} in store)")
    provider.unload()


@app.command(name="visual-query")
def visual_query(q: str,
                 config: str = typer.Option("config.toml"),
                 k: int = typer.Option(None, help="Maximum results (default: from config)"),
                 min_score: float = typer.Option(None, help="Drop hits below this similarity"),
                 path: str = typer.Option("", help="Restrict to this directory")):
    """Find images matching a text description."""
    cfg = _cfg(config)
    opts = _options(cfg, k, min_score, path, "", "score", False)
    provider = _image_provider(cfg)
    with _image_store(cfg) as store:
        _emit(VisualSearchService(provider, store).query(q, opts))


@app.command(name="visual-similar")
def visual_similar(image: str,
                   config: str = typer.Option("config.toml"),
                   k: int = typer.Option(None, help="Maximum results (default: from config)"),
                   min_score: float = typer.Option(None, help="Drop hits below this similarity"),
                   indexed: bool = typer.Option(False, help="Use the stored embedding instead of re-embedding"),
                   path: str = typer.Option("", help="Restrict to this directory")):
    """Find images similar to a given image."""
    cfg = _cfg(config)
    opts = _options(cfg, k, min_score, path, "", "score", False)
    image = os.path.abspath(image)
    with _image_store(cfg) as store:
        if indexed:
            _emit(VisualSearchService(None, store).similar_to_file(image, opts))
        else:
            provider = _image_provider(cfg)
            _emit(VisualSearchService(provider, store).similar_to_image(image, opts))


@app.command()
def status(config: str = typer.Option("config.toml")):
    """Show store statistics."""
    cfg = _cfg(config)
    with _text_store(cfg) as store:
        text_stats = SemanticSearchService(None, store).get_stats()
        schema = store.version()
    with _image_store(cfg) as istore:
        image_stats = VisualSearchService(None, istore).get_stats()
    typer.echo(json.dumps({
        "store_path": str(cfg.store_path),
        "schema_version": schema,
        "total_files": text_stats.total_files,
        "files_with_embeddings": text_stats.files_with_embeddings,
        "total_size_bytes": text_stats.total_size_bytes,
        "image_store_path": str(cfg.image_store_path),
        "indexed_images": image_stats.indexed_images,
        "watch_dirs": cfg.indexer.watch_dirs,
    }, indent=2))
