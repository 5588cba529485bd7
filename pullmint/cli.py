"""pullmint operator CLI."""

from __future__ import annotations

import json
from pathlib import Path

import typer

from pullmint.server.db import ExecutionStore
from pullmint.server.executions import ExecutionRepository
from pullmint.shared.errors import ConfigurationError
from pullmint.shared.settings import PipelineSettings, get_pipeline_settings
from pullmint.shared.utils import compute_signature, repo_pr_key

app = typer.Typer(add_completion=False, help="pullmint: PR analysis and gated deployment pipeline")


def _load_settings() -> PipelineSettings:
    try:
        return get_pipeline_settings()
    except ConfigurationError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=2) from exc


def _repository(db: Path | None) -> ExecutionRepository:
    settings = _load_settings()
    path = str(db) if db is not None else settings.sqlite_path
    if path == ":memory:":
        raise typer.BadParameter("an on-disk database is required; pass --db or set PULLMINT_SQLITE_PATH")
    return ExecutionRepository(ExecutionStore(path), settings)


@app.command()
def config() -> None:
    """Print the validated settings with URLs redacted."""
    typer.echo(json.dumps(_load_settings().redacted(), indent=2, sort_keys=True))


@app.command()
def sign(
    file: Path = typer.Option(..., "--file", exists=True, dir_okay=False),
    secret: str = typer.Option(..., "--secret", envvar="PULLMINT_SECRET_WEBHOOK_SECRET"),
) -> None:
    """Print the X-Hub-Signature-256 header value for a webhook body."""
    typer.echo(compute_signature(file.read_bytes(), secret))


@app.command("purge-expired")
def purge_expired(db: Path = typer.Option(None, "--db")) -> None:
    """Delete dedup, cache and execution rows whose ttl has passed."""
    repository = _repository(db)
    try:
        removed = repository.store.purge_expired()
    finally:
        repository.store.close()
    typer.echo(json.dumps(removed, indent=2, sort_keys=True))


@app.command("show-execution")
def show_execution(
    execution_id: str = typer.Option(..., "--id"),
    db: Path = typer.Option(None, "--db"),
) -> None:
    repository = _repository(db)
    try:
        record = repository.get_execution(execution_id)
    finally:
        repository.store.close()
    if record is None:
        typer.echo(f"Execution not found: {execution_id}", err=True)
        raise typer.Exit(code=1)
    typer.echo(json.dumps(record.to_payload(), indent=2, sort_keys=True))


@app.command("list-executions")
def list_executions(
    repo: str = typer.Option("", "--repo"),
    pr: int = typer.Option(0, "--pr"),
    status: str = typer.Option("", "--status"),
    limit: int = typer.Option(20, "--limit"),
    db: Path = typer.Option(None, "--db"),
) -> None:
    """Newest-first executions, optionally for one repository or PR."""
    repository = _repository(db)
    try:
        if repo and pr:
            records = repository.list_by_pr(repo_pr_key(repo, pr))
            if status:
                records = [record for record in records if record.status == status]
            records = records[:limit]
        elif repo:
            records = repository.list_by_repo(repo, status=status, limit=limit)
        else:
            records = repository.list_recent(limit=limit, status=status)
    finally:
        repository.store.close()
    for record in records:
        typer.echo(
            f"{record.execution_id}\t{record.status}\t"
            f"{'-' if record.risk_score is None else record.risk_score}\t{record.title}"
        )


if __name__ == "__main__":
    app()
