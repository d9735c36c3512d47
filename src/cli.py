import asyncio
import json
from typing import Optional

import typer
from common.settings import settings as S

app = typer.Typer(help="Reading-Tracker control-plane CLI")


# ---------------------------------------------------------------------
# keys
# ---------------------------------------------------------------------
@app.command()
def keys(
    isbn: Optional[str] = typer.Option(None, help="ISBN-10 or ISBN-13"),
    google_id: Optional[str] = typer.Option(None, help="Google Books volume id"),
    work_key: Optional[str] = typer.Option(None, help="Open Library work key"),
    title: Optional[str] = typer.Option(None, help="Title, used only as a last resort"),
):
    """Print the canonical key and every candidate key for a book."""
    from reconciliation.identity import candidate_keys, canonical_key
    from reconciliation.models import BookRecord

    record = BookRecord(isbn=isbn, google_books_id=google_id, openlibrary_work_key=work_key, title=title or "")
    typer.echo(f"canonical: {canonical_key(record)}")
    for key in sorted(candidate_keys(record)):
        typer.echo(f"candidate: {key}")


# ---------------------------------------------------------------------
# hydrate
# ---------------------------------------------------------------------
@app.command()
def hydrate(
    book_id: str = typer.Argument(..., help="Catalog id of the book"),
    force: bool = typer.Option(False, help="Re-fetch and allow replacing populated fields"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Compute without writing"),
):
    """Hydrate one book's cover, page count and description."""
    from book_enrichment_worker.main import EnrichmentWorker

    async def _run():
        worker = EnrichmentWorker.from_settings()
        try:
            return await worker.pipeline.hydrate(book_id, force=force, dry_run=dry_run)
        finally:
            await worker.cleanup()

    typer.echo("🔎  Hydration started…")
    result = asyncio.run(_run())
    typer.echo(json.dumps(result.model_dump(), indent=2))
    typer.echo("✅  Hydration finished")


# ---------------------------------------------------------------------
# enrich-user
# ---------------------------------------------------------------------
@app.command("enrich-user")
def enrich_user(user_id: str = typer.Argument(..., help="User whose shelf should be healed")):
    """Scan a user's shelf and enrich incomplete books in-process."""
    from book_enrichment_worker.main import EnrichmentWorker
    from reconciliation.enrichment import EnrichmentScheduler, LocalEnrichmentEntryPoint

    async def _run():
        worker = EnrichmentWorker.from_settings()
        try:
            books = await worker.store.list_user_books(user_id)
            scheduler = EnrichmentScheduler(
                LocalEnrichmentEntryPoint(worker.pipeline), worker.pipeline.context, enabled=True
            )
            return await scheduler.enqueue_enrichment(books)
        finally:
            await worker.cleanup()

    typer.echo("🔎  Shelf enrichment started…")
    report = asyncio.run(_run())
    typer.echo(json.dumps(report.model_dump(exclude={"updated"}), indent=2))
    typer.echo("✅  Shelf enrichment finished")


# ---------------------------------------------------------------------
# queue
# ---------------------------------------------------------------------
@app.command()
def queue(
    book_id: str = typer.Argument(..., help="Catalog id of the book"),
    force: bool = typer.Option(False, help="Ask the worker to force hydration"),
):
    """Publish an enrichment task for the background worker."""
    from common.events import BOOK_ENRICHMENT_TASKS_TOPIC, BookEnrichmentTaskEvent
    from common.kafka_utils import close_producers, publish_event

    async def _run():
        try:
            return await publish_event(
                BOOK_ENRICHMENT_TASKS_TOPIC, BookEnrichmentTaskEvent(book_id=book_id, force=force)
            )
        finally:
            await close_producers()

    if not asyncio.run(_run()):
        typer.echo("❌  Failed to publish enrichment task", err=True)
        raise typer.Exit(code=1)
    typer.echo("✅  Enrichment task queued")


# ---------------------------------------------------------------------
# worker / serve
# ---------------------------------------------------------------------
@app.command()
def worker():
    """Run the background enrichment worker."""
    from book_enrichment_worker.main import main as _worker_job

    typer.echo("🔎  Book-enrichment worker started…")
    asyncio.run(_worker_job())


@app.command()
def serve(host: str = typer.Option("127.0.0.1"), port: int = typer.Option(S.catalog_api_port)):
    """Run the catalog API."""
    import uvicorn

    uvicorn.run("catalog_api.main:app", host=host, port=port, reload=False)


if __name__ == "__main__":
    app()
