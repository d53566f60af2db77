import os
import time
from pathlib import Path
from typing import Optional

import typer
from alembic import command
from alembic.config import Config as AlembicConfig
from rich.console import Console
from rich.table import Table

from stagevec.cli.config_manager import get_config_manager
from stagevec.core.config import IngestConfig
from stagevec.core.errors import StagevecError
from stagevec.core.ingest import IngestionPipeline
from stagevec.core.logging_config import configure_logging, get_audit_logger, log_search
from stagevec.core.stage import FileStage
from stagevec.core.store import ChunkStore

app = typer.Typer(help="stagevec: stage documents into a searchable chunk store")
console = Console()

MIGRATIONS_DIR = Path(__file__).resolve().parent.parent / "migrations"

# Initialize structured logging
configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_logs=os.getenv("JSON_LOGS", "false").lower() == "true"
)


def _load_config(config_file: Optional[str] = None) -> IngestConfig:
    config = get_config_manager().load()
    if config_file:
        config = IngestConfig.from_file(config_file, base=config)
    return config


def _pipeline(config: IngestConfig) -> IngestionPipeline:
    pipeline = IngestionPipeline.from_config(config.validate())
    pipeline.store.create_schema()
    return pipeline


def _store(config: IngestConfig) -> ChunkStore:
    store = ChunkStore.from_config(config.validate())
    store.create_schema()
    return store


@app.command()
def ingest(
    pattern: Optional[str] = typer.Option(None, help="Glob of stage files to ingest"),
    force: bool = typer.Option(False, "--force", help="Re-ingest documents that are unchanged"),
    workers: Optional[int] = typer.Option(None, help="Documents prepared in parallel"),
    chunk_size: Optional[int] = typer.Option(None, help="Maximum characters per chunk"),
    chunk_overlap: Optional[int] = typer.Option(None, help="Characters shared by consecutive chunks"),
    config_file: Optional[str] = typer.Option(None, "--config", help="JSON file of config overrides"),
):
    """Ingest documents from the stage into the chunk store."""
    try:
        config = _load_config(config_file)
        overrides = {"max_workers": workers, "chunk_size": chunk_size, "chunk_overlap": chunk_overlap}
        config = config.merged({k: v for k, v in overrides.items() if v is not None})

        console.print(f"[bold]Ingesting from stage:[/] {config.stage_dir}")
        pipeline = _pipeline(config)

        with console.status("[bold green]Processing documents..."):
            report = pipeline.run(pattern=pattern, force=force)

    except StagevecError as e:
        console.print(f"[red]Error during ingestion:[/] {e}")
        raise typer.Exit(1)

    console.print(f"[green]✅ Ingestion complete![/]")
    console.print(f"[bold]Documents ingested:[/] {len(report.ingested)}")
    console.print(f"[bold]Documents skipped (unchanged):[/] {len(report.skipped)}")
    console.print(f"[bold]Total chunks created:[/] {report.total_chunks}")
    if report.failed_pages:
        console.print(f"[yellow]Pages replaced by sentinel text:[/] {report.failed_pages}")

    if report.failed:
        console.print(f"[red]Documents failed:[/] {len(report.failed)}")
        for result in report.failed:
            console.print(f"  • {result.path}: {result.error}")
        raise typer.Exit(1)


@app.command()
def count():
    """Show the number of chunks stored per document."""
    try:
        counts = _store(_load_config()).count_chunks_per_document()
    except StagevecError as e:
        console.print(f"[red]Error counting chunks:[/] {e}")
        raise typer.Exit(1)

    if not counts:
        console.print("[yellow]No documents stored.[/]")
        return

    table = Table(title="Chunks per document")
    table.add_column("Path")
    table.add_column("Chunks", justify="right")
    for row in counts:
        table.add_row(row.path, str(row.chunk_count))
    console.print(table)


@app.command()
def rows(limit: int = typer.Option(20, help="Maximum number of rows")):
    """Show stored (path, size, chunk text, vector) rows."""
    try:
        stored = _store(_load_config()).rows(limit=limit)
    except StagevecError as e:
        console.print(f"[red]Error reading rows:[/] {e}")
        raise typer.Exit(1)

    for path, size, text, vector in stored:
        console.print(f"[bold]{path}[/] ({size} bytes, {len(vector)}d)")
        console.print(f"   {text[:160]}")


@app.command()
def search(
    query: str,
    limit: int = typer.Option(5, help="Maximum number of results"),
):
    """Find the chunks nearest to a query."""
    audit_logger = get_audit_logger("search")
    start_time = time.time()

    try:
        pipeline = _pipeline(_load_config())
        with console.status("[bold green]Searching..."):
            query_vector = pipeline.embedder.embed_query(query)
            hits = pipeline.store.search(query_vector, k=limit)
    except StagevecError as e:
        console.print(f"[red]Error during search:[/] {e}")
        raise typer.Exit(1)

    log_search(audit_logger, query, limit, len(hits), (time.time() - start_time) * 1000)

    if not hits:
        console.print("[yellow]No results found.[/]")
        return

    console.print(f"[green]Found {len(hits)} results:[/]")
    for i, hit in enumerate(hits, 1):
        console.print(f"[bold]{i}. {hit.path} (chunk {hit.sequence})[/]")
        console.print(f"   [blue]Score:[/] {hit.score:.3f}")
        console.print(f"   [green]Snippet:[/] {hit.text[:200]}")


@app.command()
def purge(path: str):
    """Delete a document and its chunks from the store."""
    try:
        deleted = _store(_load_config()).purge_document(path)
    except StagevecError as e:
        console.print(f"[red]Error purging {path}:[/] {e}")
        raise typer.Exit(1)

    if deleted == 0:
        console.print(f"[yellow]No chunks removed for {path}[/]")
    else:
        console.print(f"[green]✅ Purged {path} ({deleted} chunks)[/]")


@app.command()
def url(
    path: str,
    expires: Optional[int] = typer.Option(None, help="Seconds until the URL expires"),
):
    """Print a scoped, expiring URL for a staged file."""
    try:
        stage = FileStage.from_config(_load_config())
        typer.echo(stage.build_scoped_url(path, expires_in=expires))
    except StagevecError as e:
        console.print(f"[red]Error building URL:[/] {e}")
        raise typer.Exit(1)


@app.command()
def reembed(
    model: str = typer.Option(..., help="Embedding model to switch the store to"),
    provider: Optional[str] = typer.Option(None, help="Embedding provider: openai, local, hash"),
):
    """Re-embed every stored chunk with a new model."""
    try:
        config = _load_config()
        if provider:
            config = config.merged({"embedding_provider": provider})
        config = config.merged({"embed_model": model})
        pipeline = _pipeline(config)

        with console.status(f"[bold green]Re-embedding with {model}..."):
            replaced = pipeline.reembed(pipeline.embedder)
    except StagevecError as e:
        console.print(f"[red]Error re-embedding:[/] {e}")
        raise typer.Exit(1)

    console.print(f"[green]✅ Re-embedded {replaced} chunks with {model}[/]")
    if replaced:
        get_config_manager().set("embed_model", model)
        if provider:
            get_config_manager().set("embedding_provider", provider)


@app.command()
def index(force: bool = typer.Option(False, "--force", help="Rebuild even if the index is current")):
    """Build the FAISS index from stored embeddings."""
    try:
        store = _store(_load_config())
        if force:
            index_stats = store.rebuild_index()
        else:
            store.ensure_index()
            index_stats = store.index.get_stats()
    except StagevecError as e:
        console.print(f"[red]Error building FAISS index:[/] {e}")
        raise typer.Exit(1)

    console.print(f"[green]✅ FAISS index ready[/]")
    console.print(f"[bold]Index type:[/] {index_stats['index_type']}")
    console.print(f"[bold]Total vectors:[/] {index_stats['total_vectors']}")


@app.command()
def status():
    """Show store statistics."""
    try:
        config = _load_config()
        stats = _store(config).stats()
    except StagevecError as e:
        console.print(f"[red]Error getting status:[/] {e}")
        raise typer.Exit(1)

    console.print("[bold]🚀 stagevec status[/]")
    console.print(f"  Documents: {stats['documents']}")
    console.print(f"  Chunks: {stats['chunks']}")
    console.print(f"  Embedding model: {stats['embed_model'] or 'none pinned'}")
    if stats["vector_dim"]:
        console.print(f"  Vector dimensions: {stats['vector_dim']}")
    console.print(f"  Stage: {config.stage_dir}")
    console.print(f"  Database: {config.database_url}")


@app.command("init-db")
def init_db():
    """Create or upgrade the chunk store schema with alembic migrations."""
    try:
        config = _load_config()
    except StagevecError as e:
        console.print(f"[red]Error loading configuration:[/] {e}")
        raise typer.Exit(1)

    alembic_cfg = AlembicConfig()
    alembic_cfg.set_main_option("script_location", str(MIGRATIONS_DIR))
    alembic_cfg.set_main_option("sqlalchemy.url", config.database_url)
    command.upgrade(alembic_cfg, "head")
    console.print(f"[green]✅ Schema up to date:[/] {config.database_url}")


@app.command()
def config(
    action: str = typer.Argument(..., help="Action: show, set, reset, validate"),
    key: Optional[str] = typer.Argument(None, help="Configuration key"),
    value: Optional[str] = typer.Argument(None, help="Configuration value"),
):
    """Manage persisted configuration settings."""
    try:
        manager = get_config_manager()
        if action == "show":
            console.print("\n[bold]Current Configuration:[/]")
            for name, current in manager.load().redacted().items():
                console.print(f"  [blue]{name}:[/] {current}")
        elif action == "set":
            if not key or value is None:
                console.print("[red]Error:[/] Both key and value required for 'set' action")
                raise typer.Exit(1)
            manager.set(key, value)
            console.print(f"[green]✅ Set {key} = {value}[/]")
        elif action == "reset":
            if not key:
                console.print("[red]Error:[/] Key required for 'reset' action")
                raise typer.Exit(1)
            if manager.reset(key):
                console.print(f"[green]✅ Reset {key} to default[/]")
            else:
                console.print(f"[yellow]Note:[/] {key} was not set")
        elif action == "validate":
            validation = manager.validate()
            for warning in validation["warnings"]:
                console.print(f"[yellow]⚠ {warning}[/]")
            if not validation["valid"]:
                console.print(f"\n[red]❌ Configuration issues found:[/]")
                for issue in validation["issues"]:
                    console.print(f"  • {issue}")
                raise typer.Exit(1)
            console.print(f"\n[green]✅ Configuration validation passed![/]")
        else:
            console.print(f"[red]Error:[/] Unknown action: {action}")
            console.print("Available actions: show, set, reset, validate")
            raise typer.Exit(1)
    except StagevecError as e:
        console.print(f"[red]Error:[/] {e}")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
