import asyncio
import json
from pathlib import Path
from typing import Optional

import typer
from tqdm import tqdm

from gsmtower.config import StationsConfig
from gsmtower.ingestion.uke import DEFAULT_SOURCE_URL, PublicationError
from gsmtower.io.jsonl import write_jsonl
from gsmtower.repository import PointsRepository, RefreshError
from gsmtower.schemas.point import Location, Point, PointFilter
from gsmtower.utils.http import RetryConfig
from gsmtower.utils.logging import setup_logging

app = typer.Typer(add_completion=False, help="GSM tower permits CLI")
query_app = typer.Typer(help="Query the local station database")

DATA_DIR_OPTION = typer.Option(Path("data"), "--data-dir", envvar="GSMTOWER_DATA_DIR")


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(None, "--log-level", envvar="GSMTOWER_LOG_LEVEL"),
) -> None:
    setup_logging(log_level)


def _repository(data_dir: Path, **overrides) -> PointsRepository:
    config = StationsConfig(data_dir=data_dir, **overrides)
    return PointsRepository.from_config(config)


def _point_filter(technologies: Optional[list[str]], operators: Optional[list[str]]) -> PointFilter:
    return PointFilter(
        technologies=set(technologies) if technologies else None,
        operator_names=set(operators) if operators else None,
    )


def _emit_points(points: list[Point], output_path: Optional[Path]) -> None:
    rows = [point.model_dump() for point in points]
    if output_path is None:
        for row in rows:
            typer.echo(json.dumps(row, ensure_ascii=False))
        return
    written = write_jsonl(output_path, rows)
    typer.echo(f"Wrote {written} points to {output_path}")


@app.command("check")
def check(
    data_dir: Path = DATA_DIR_OPTION,
    source_url: str = typer.Option(DEFAULT_SOURCE_URL, "--source-url", envvar="GSMTOWER_SOURCE_URL"),
    timeout_seconds: float = typer.Option(30.0, "--timeout-seconds"),
) -> None:
    """Exit with code 0 when a newer publication is available, 1 otherwise."""
    with _repository(data_dir, source_url=source_url, timeout_seconds=timeout_seconds) as repository:
        try:
            available = asyncio.run(repository.is_new_version_available())
        except PublicationError as exc:
            typer.echo(f"Could not check the publication: {exc}", err=True)
            raise typer.Exit(code=2)
    typer.echo("New version available" if available else "Local data is up to date")
    raise typer.Exit(code=0 if available else 1)


@app.command("refresh")
def refresh(
    data_dir: Path = DATA_DIR_OPTION,
    source_url: str = typer.Option(DEFAULT_SOURCE_URL, "--source-url", envvar="GSMTOWER_SOURCE_URL"),
    flush_size: int = typer.Option(5_000, "--flush-size"),
    file_group_size: int = typer.Option(3, "--file-group-size"),
    max_parallel_downloads: int = typer.Option(4, "--max-parallel-downloads"),
    throttle_seconds: float = typer.Option(0.0, "--throttle-seconds"),
    timeout_seconds: float = typer.Option(30.0, "--timeout-seconds"),
    retries: int = typer.Option(3, "--retries"),
) -> None:
    with _repository(
        data_dir,
        source_url=source_url,
        flush_size=flush_size,
        file_group_size=file_group_size,
        max_parallel_downloads=max_parallel_downloads,
        throttle_seconds=throttle_seconds,
        timeout_seconds=timeout_seconds,
        retry=RetryConfig(retries=retries),
    ) as repository:
        with tqdm(total=100, desc="Refresh", unit="%") as bar:

            def on_progress(fraction: float, message: str) -> None:
                bar.set_description(message)
                bar.update(round(fraction * 100) - bar.n)

            try:
                stats = asyncio.run(repository.refresh(on_progress))
            except RefreshError as exc:
                typer.echo(str(exc), err=True)
                raise typer.Exit(code=1)

    summary = stats.to_dict()
    typer.echo(
        f"Publication {summary['publication_date']}: {summary['rows']} rows, "
        f"{summary['rejected']} rejected, {summary['points_flushed']} points saved"
    )


@app.command("dates")
def dates(data_dir: Path = DATA_DIR_OPTION) -> None:
    with _repository(data_dir) as repository:
        for day in repository.get_local_dates():
            typer.echo(day.isoformat())


@app.command("purge")
def purge(
    data_dir: Path = DATA_DIR_OPTION,
    yes: bool = typer.Option(False, "--yes", help="Do not ask for confirmation"),
) -> None:
    if not yes:
        typer.confirm(f"Delete all downloaded files and points under {data_dir}?", abort=True)
    with _repository(data_dir) as repository:
        repository.delete_all_local_data()
    typer.echo("Local data removed")


@query_app.command("points")
def query_points(
    latitude: float = typer.Option(..., "--lat"),
    longitude: float = typer.Option(..., "--lon"),
    radius_meters: float = typer.Option(1_000.0, "--radius"),
    technologies: Optional[list[str]] = typer.Option(None, "--technology"),
    operators: Optional[list[str]] = typer.Option(None, "--operator"),
    output_path: Optional[Path] = typer.Option(None, "--output"),
    data_dir: Path = DATA_DIR_OPTION,
) -> None:
    with _repository(data_dir) as repository:
        points = repository.get_points(
            Location(latitude=latitude, longitude=longitude),
            radius_meters,
            _point_filter(technologies, operators),
        )
    _emit_points(points, output_path)


@query_app.command("all")
def query_all(
    technologies: Optional[list[str]] = typer.Option(None, "--technology"),
    operators: Optional[list[str]] = typer.Option(None, "--operator"),
    output_path: Optional[Path] = typer.Option(None, "--output"),
    data_dir: Path = DATA_DIR_OPTION,
) -> None:
    with _repository(data_dir) as repository:
        points = repository.get_all_points(_point_filter(technologies, operators))
    _emit_points(points, output_path)


@query_app.command("technologies")
def query_technologies(data_dir: Path = DATA_DIR_OPTION) -> None:
    with _repository(data_dir) as repository:
        for technology in repository.get_technologies():
            typer.echo(technology)


@query_app.command("operators")
def query_operators(data_dir: Path = DATA_DIR_OPTION) -> None:
    with _repository(data_dir) as repository:
        for operator_name in repository.get_operator_names():
            typer.echo(operator_name)


app.add_typer(query_app, name="query")
