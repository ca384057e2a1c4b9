"""Command-line entry point."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import typer

from leafdx.config import get_settings
from leafdx.exceptions import DecodeError, LoadError
from leafdx.ml.classifier import ClassifierService
from leafdx.ml.labels import CLASS_NAMES
from leafdx.ml.preprocessing import decode_image

logger = logging.getLogger(__name__)

app = typer.Typer(help="LeafDx: plant leaf disease classifier", no_args_is_help=True)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


@app.command()
def classify(
    image: Path = typer.Argument(..., help="Path to a leaf photo"),
    top_k: int = typer.Option(1, "--top-k", "-k", min=1, help="Number of ranked predictions"),
    json_out: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Classify a single leaf image."""
    settings = get_settings()
    _configure_logging(settings.log_level)

    try:
        raw = decode_image(image.read_bytes(), max_pixels=settings.max_image_pixels)
    except OSError as exc:
        typer.echo(f"Error: cannot read {image}: {exc}", err=True)
        raise typer.Exit(1) from exc
    except DecodeError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(1) from exc

    logger.info(
        "Starting LeafDx (device=%s, max_workers=%s)",
        settings.device,
        settings.max_workers,
    )
    with ClassifierService(settings) as service:
        try:
            service.initialize().result()
        except LoadError as exc:
            typer.echo(f"Error: {exc}", err=True)
            raise typer.Exit(1) from exc

        if top_k == 1:
            results = [service.classify(raw).result()]
        else:
            results = service.classify_ranked(raw, top_k=top_k).result()

    if json_out:
        typer.echo(json.dumps([result.as_dict() for result in results], indent=2))
        return
    for result in results:
        typer.echo(result.format())


@app.command()
def labels() -> None:
    """List the disease categories the model predicts."""
    for index, name in enumerate(CLASS_NAMES):
        typer.echo(f"{index:2d}  {name}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
