"""Entry-point for the Shala Shikshak services."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import uvicorn
import typer

from shala.bootstrap import initialize_app
from shala.logging_utils import DEFAULT_LOG_FORMAT, configure_logging, get_log_file_path
from shala.services.blob_store import BlobStore
from shala.services.compression import PDFCompressor
from shala.services.ingestion import PDFIngestor
from shala.services.storage import CourseRepository
from shala.errors import ShalaError
from shala.ui.console import ConsoleUI
from shala.web import create_app


LOGGER = logging.getLogger("shala.cli")


cli = typer.Typer(add_completion=False, help="Shala Shikshak management commands")


def _prepare_logging(data_root: Path) -> None:
    log_file = get_log_file_path(data_root)
    formatter = logging.Formatter(DEFAULT_LOG_FORMAT)
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    configure_logging(handlers=[file_handler, stream_handler])


DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 5000


@cli.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Launch the web server when no explicit command is provided."""

    if ctx.invoked_subcommand is None:
        ctx.invoke(serve, host=DEFAULT_HOST, port=DEFAULT_PORT, root_path=None)


def _normalize_root_path(root_path: Optional[str]) -> str:
    if root_path is None:
        return ""
    normalized = root_path.strip().rstrip("/")
    if normalized and not normalized.startswith("/"):
        normalized = f"/{normalized}"
    return normalized


@cli.command()
def serve(
    host: str = typer.Option(DEFAULT_HOST, help="Host interface for the web server"),
    port: int = typer.Option(DEFAULT_PORT, help="Port for the web server"),
    root_path: Optional[str] = typer.Option(
        None,
        help="Prefix the application expects when mounted behind a proxy",
        envvar="SHALA_ROOT_PATH",
    ),
) -> None:
    """Run the FastAPI upload and curriculum API."""

    app_config = initialize_app(clear_staging=True)
    _prepare_logging(app_config.data_root)

    normalized_root = _normalize_root_path(root_path)
    app = create_app(
        app_config,
        repository=CourseRepository(app_config),
        root_path=normalized_root,
    )

    server_config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_config=None,
        root_path=normalized_root,
    )
    server = uvicorn.Server(server_config)
    app.state.server = server
    LOGGER.info("Serving on http://%s:%s%s", host, port, normalized_root or "/")
    server.run()


@cli.command()
def files() -> None:
    """List stored PDFs and the curriculum outline."""

    config = initialize_app()
    _prepare_logging(config.data_root)

    store = BlobStore.from_config(config)
    ui = ConsoleUI(CourseRepository(config))
    ui.show_files(asyncio.run(store.list()))
    ui.show_curriculum()


@cli.command()
def ingest(
    pdf: Path = typer.Argument(
        ...,
        exists=True,
        file_okay=True,
        dir_okay=False,
        resolve_path=True,
        help="Path to the PDF to upload.",
    ),
    no_compress: bool = typer.Option(
        False, "--no-compress", help="Store the PDF without attempting compression."
    ),
) -> None:
    """Run the upload pipeline on a local PDF and print the stored descriptor."""

    config = initialize_app()
    _prepare_logging(config.data_root)

    store = BlobStore.from_config(config)
    compressor = PDFCompressor.from_config(config.compression)
    ingestor = PDFIngestor(
        store, compressor, threshold_bytes=config.compression.threshold_bytes
    )

    try:
        result = asyncio.run(
            ingestor.ingest(
                pdf.read_bytes(),
                pdf.name,
                compress=False if no_compress else None,
            )
        )
    except ShalaError as error:
        typer.echo(f"Ingestion failed: {error}")
        raise typer.Exit(code=1) from error

    typer.echo(result.message)
    typer.echo(json.dumps(result.to_dict(), indent=2))


@cli.command("compression-status")
def compression_status() -> None:
    """Report whether Ghostscript is available for PDF compression."""

    config = initialize_app()
    compressor = PDFCompressor.from_config(config.compression)
    if asyncio.run(compressor.is_available()):
        typer.echo(f"Ghostscript ('{config.compression.binary}') is available.")
    else:
        typer.echo(
            f"Ghostscript ('{config.compression.binary}') is not available; "
            "PDFs will be stored without compression."
        )


if __name__ == "__main__":
    cli()
