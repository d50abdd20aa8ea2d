from __future__ import annotations

import asyncio
import logging
import shutil
import tempfile
from pathlib import Path

import typer

from pkgrepo import AppConfig, Repository, UploadNotAuthorizedError, load_config
from pkgrepo.reconciler import RefreshStats, ResyncStats
from pkgrepo.schemas import encode_raw_info
from pkgrepo.summary import SUMMARY_FORMATS, summary_filename

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

app = typer.Typer(help="Package repository metadata cache CLI")

_CONFIG_OPTION = typer.Option(
    Path("config.json"),
    "--config",
    help="Config file path (JSON or YAML).",
    exists=True,
    dir_okay=False,
    readable=True,
)
_REPO_OPTION = typer.Option(
    None,
    "--repo",
    help="Repository id from the config. Optional when only one is configured.",
)


@app.command("refresh")
def refresh(
    config_path: Path = _CONFIG_OPTION,
    repo_id: str | None = _REPO_OPTION,
) -> None:
    """Scan the repository directory and extract metadata for new files."""
    repository = _open_repository(config_path, repo_id)
    stats = asyncio.run(repository.refresh())
    typer.echo(_render_refresh(stats))


@app.command("resync")
def resync(
    config_path: Path = _CONFIG_OPTION,
    repo_id: str | None = _REPO_OPTION,
) -> None:
    """Extract metadata for records still pending extraction."""
    repository = _open_repository(config_path, repo_id)
    stats = asyncio.run(repository.resync())
    typer.echo(_render_resync(stats))


@app.command("sync")
def sync(
    config_path: Path = _CONFIG_OPTION,
    repo_id: str | None = _REPO_OPTION,
) -> None:
    """Mirror from the configured upstream, then refresh."""
    repository = _open_repository(config_path, repo_id)
    stats = asyncio.run(repository.sync())
    typer.echo(_render_refresh(stats))


@app.command("categories")
def categories(
    config_path: Path = _CONFIG_OPTION,
    repo_id: str | None = _REPO_OPTION,
) -> None:
    """List known categories."""
    repository = _open_repository(config_path, repo_id)
    for category in repository.categories():
        typer.echo(category)


@app.command("list")
def list_artifacts(
    category: str = typer.Argument("All", help="Category name, or All."),
    config_path: Path = _CONFIG_OPTION,
    repo_id: str | None = _REPO_OPTION,
) -> None:
    """List artifact filenames in a category."""
    repository = _open_repository(config_path, repo_id)
    for filename in repository.artifacts(category):
        typer.echo(filename)


@app.command("summary")
def summary(
    fmt: str = typer.Option(
        "text",
        "--format",
        help="Output format: text, gz or bz2.",
    ),
    output: Path | None = typer.Option(
        None,
        "--output",
        help="Output path. Defaults to stdout for text and pkg_summary.<format> otherwise.",
    ),
    config_path: Path = _CONFIG_OPTION,
    repo_id: str | None = _REPO_OPTION,
) -> None:
    """Write the aggregated pkg_summary."""
    if fmt != "text" and fmt not in SUMMARY_FORMATS:
        typer.echo(f"unsupported --format: {fmt}", err=True)
        raise typer.Exit(code=1)

    repository = _open_repository(config_path, repo_id)
    if fmt == "text":
        blob = encode_raw_info(repository.summary())
        if output is None:
            typer.echo(blob, nl=False)
            return
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_bytes(blob)
        typer.echo(f"summary_out={output}")
        return

    payload = repository.compressed_summary(fmt)
    target = output or Path(summary_filename(fmt))
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(payload)
    typer.echo(f"summary_out={target} bytes={len(payload)}")


@app.command("prune")
def prune(
    keep: int | None = typer.Option(
        None,
        "--keep",
        help="Versions to keep per package. Defaults to keep_versions from the config.",
        min=1,
    ),
    config_path: Path = _CONFIG_OPTION,
    repo_id: str | None = _REPO_OPTION,
) -> None:
    """Remove superseded package versions."""
    repository = _open_repository(config_path, repo_id)
    stats = asyncio.run(repository.prune(keep))
    if stats is None:
        typer.echo("no retention count: pass --keep or set keep_versions", err=True)
        raise typer.Exit(code=1)

    for filename in stats.removed_filenames:
        typer.echo(f"removed {filename}")
    typer.echo(
        f"candidates={stats.candidates} removed={stats.removed} failed={stats.failed}"
    )


@app.command("upload")
def upload(
    file: Path = typer.Argument(
        ...,
        help="Package file to add to the repository.",
        exists=True,
        dir_okay=False,
        readable=True,
    ),
    token: str = typer.Option(..., "--token", help="Upload token."),
    config_path: Path = _CONFIG_OPTION,
    repo_id: str | None = _REPO_OPTION,
) -> None:
    """Add a package file to the repository and index it."""
    config = _load_config_or_exit(config_path)
    repository = _open_repository_from(config, repo_id)

    staging_root = config.tmpdir
    if staging_root is not None:
        Path(staging_root).mkdir(parents=True, exist_ok=True)
    with tempfile.TemporaryDirectory(dir=staging_root) as staging_dir:
        staged = Path(staging_dir) / file.name
        shutil.copy2(file, staged)
        try:
            record = asyncio.run(repository.accept_upload(token, staged, file.name))
        except UploadNotAuthorizedError as exc:
            typer.echo(str(exc), err=True)
            raise typer.Exit(code=1) from exc
        except ValueError as exc:
            typer.echo(str(exc), err=True)
            raise typer.Exit(code=1) from exc

    if record is None:
        typer.echo(f"uploaded {file.name} (not indexed)")
    elif record.is_pending:
        typer.echo(f"uploaded {file.name} (metadata pending)")
    else:
        typer.echo(f"uploaded {file.name} pkgname={record.pkgname}")


@app.command("remove")
def remove(
    filename: str = typer.Argument(..., help="Artifact filename to delete."),
    config_path: Path = _CONFIG_OPTION,
    repo_id: str | None = _REPO_OPTION,
) -> None:
    """Delete an artifact file and its cached metadata."""
    repository = _open_repository(config_path, repo_id)
    try:
        removed = asyncio.run(repository.remove(filename))
    except ValueError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1) from exc
    typer.echo(f"removed={removed} filename={filename}")


@app.command("status")
def status(
    config_path: Path = _CONFIG_OPTION,
    repo_id: str | None = _REPO_OPTION,
) -> None:
    """Show cached record counts."""
    repository = _open_repository(config_path, repo_id)
    counts = repository.status()
    typer.echo(
        f"repo={repository.repo_id} "
        f"total={counts['total']} fresh={counts['fresh']} pending={counts['pending']}"
    )


def _render_refresh(stats: RefreshStats) -> str:
    scan = stats.scan
    return "\n".join(
        [
            "scan "
            f"seen={scan.seen} registered={scan.registered} unchanged={scan.unchanged} "
            f"forgotten={scan.forgotten} failed={scan.failed}",
            _render_resync(stats.resync),
        ]
    )


def _render_resync(stats: ResyncStats) -> str:
    return (
        "resync "
        f"pending={stats.pending} batches={stats.batches} extracted={stats.extracted} "
        f"failed_batches={stats.failed_batches} skipped={stats.skipped} failed={stats.failed}"
    )


def _load_config_or_exit(config_path: Path) -> AppConfig:
    try:
        return load_config(config_path)
    except ValueError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1) from exc


def _open_repository_from(config: AppConfig, repo_id: str | None) -> Repository:
    try:
        return Repository.from_config(config, repo_id)
    except ValueError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1) from exc


def _open_repository(config_path: Path, repo_id: str | None) -> Repository:
    return _open_repository_from(_load_config_or_exit(config_path), repo_id)


def main() -> None:
    """CLI entrypoint."""
    app()


if __name__ == "__main__":
    main()
