"""
certstore command line — click commands over the Store.

Settings are loaded once in the group callback and passed down through the
click context; `--root` and `--log-level` produce a new settings object
rather than touching any global. Every command ends in `_finish`, which
renders a success or prints `Error: <failure>` and exits with the code
ExitCodeMapper assigns to the failure.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable, TypeVar

import click
from pydantic import ValidationError
from railway import ErrorCode
from railway.cli_support import ErrorResponse, ExitCode, ExitCodeMapper
from railway.result import Result
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from cert_store import __version__
from cert_store.adapters.env_file import generate_env_file
from cert_store.config import AppSettings
from cert_store.doctor import run_diagnostics
from cert_store.domain.metadata import Metadata, UserCertificate
from cert_store.domain.models import HealthReport, HealthStatus
from cert_store.main import configure_structlog, create_context, create_refresh, create_store
from cert_store.scheduler import create_scheduler
from cert_store.store import Store

T = TypeVar("T")

console = Console()
err_console = Console(stderr=True)

_STATUS_ICONS = {
    HealthStatus.PASS: "[green]✓[/green]",
    HealthStatus.WARN: "[yellow]![/yellow]",
    HealthStatus.FAIL: "[red]✗[/red]",
}


# ──────────────────────── Helpers ────────────────────────


def _settings(ctx: click.Context) -> AppSettings:
    return ctx.find_object(AppSettings)


def _store(ctx: click.Context) -> Store:
    return create_store(_settings(ctx))


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _fail(error: Any, as_json: bool = False, hint: str | None = None) -> None:
    if as_json:
        _echo_json(ErrorResponse.from_failure(error).to_dict())
    else:
        err_console.print(f"[red]Error:[/red] {escape(str(error))}")
        if hint:
            err_console.print(escape(hint))
    raise SystemExit(int(ExitCodeMapper.map_failure(error)))


def _finish(
    result: Result[T],
    render: Callable[[T], None],
    as_json: bool = False,
    hints: dict[ErrorCode, str] | None = None,
) -> None:
    if result.is_failure():
        error = result.error()
        _fail(error, as_json, (hints or {}).get(error.code))
    render(result.value())


def _timestamp(value: datetime) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S %Z")


def _format_bytes(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{int(value)} B" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} B"


def _field(label: str, value: object) -> None:
    console.print(f"  [bold]{label + ':':<16}[/bold] {escape(str(value))}", soft_wrap=True)


def _certificate_dict(cert: UserCertificate) -> dict[str, Any]:
    return cert.model_dump(mode="json")


# ──────────────────────── Root group ────────────────────────


@click.group()
@click.version_option(__version__, prog_name="certstore")
@click.option("--root", type=click.Path(path_type=Path), default=None, help="Store directory (default: ~/.cert-store)")
@click.option("--log-level", default=None, help="DEBUG, INFO, WARNING (default) or ERROR")
@click.pass_context
def cli(ctx: click.Context, root: Path | None, log_level: str | None) -> None:
    """Manage a local trust store: a base CA bundle plus your own certificates."""
    try:
        base = ctx.obj if isinstance(ctx.obj, AppSettings) else AppSettings()
        settings = base.with_overrides(root=root, log_level=log_level)
    except ValidationError as e:
        err_console.print(f"[red]Error:[/red] invalid configuration: {escape(str(e))}")
        raise SystemExit(int(ExitCode.CONFIG)) from e
    configure_structlog(settings.log_level)
    ctx.obj = settings


@cli.command()
@click.option("--force", is_flag=True, help="Re-initialize an existing store (removes user certificates)")
@click.pass_context
def init(ctx: click.Context, force: bool) -> None:
    """Initialize the certificate store."""
    settings = _settings(ctx)
    store = _store(ctx)
    result = store.initialize(create_context(settings), force=force).flat_map(
        lambda record: generate_env_file(store.paths.root, store.paths.combined_bundle).map(lambda _: record)
    )

    def render(record: Metadata) -> None:
        console.print("[green]✓[/green] Certificate store initialized")
        _field("Location", store.paths.root)
        _field("Certificates", record.combined_bundle.cert_count)
        _field("Bundle", store.paths.combined_bundle)
        console.print(f"\nTo use it in your shell: [bold]source {escape(str(store.paths.env_file))}[/bold]", soft_wrap=True)

    _finish(result, render, hints={ErrorCode.ALREADY_INITIALIZED: "Use --force to re-initialize."})


# ──────────────────────── cert ────────────────────────


@cli.group()
def cert() -> None:
    """User certificate commands."""


@cert.command("add")
@click.argument("path", type=click.Path(path_type=Path))
@click.option("--name", required=True, help="Name to store the certificate under")
@click.option("--force", is_flag=True, help="Add the certificate even if it has expired")
@click.pass_context
def cert_add(ctx: click.Context, path: Path, name: str, force: bool) -> None:
    """Add a PEM certificate to the store."""
    result = _store(ctx).add_certificate(path, name, create_context(_settings(ctx)), allow_expired=force)

    def render(entry: UserCertificate) -> None:
        console.print(f"[green]✓[/green] Added certificate [bold]{escape(entry.name)}[/bold]")
        _field("Subject", entry.subject)
        _field("Expires", _timestamp(entry.expires))
        _field("Fingerprint", entry.fingerprint)

    _finish(
        result,
        render,
        hints={
            ErrorCode.EXPIRED: "Use --force to add expired certificates.",
            ErrorCode.BUNDLE_STALE: "Run 'certstore bundle rebuild' to recover.",
        },
    )


@cert.command("list")
@click.option("--json", "as_json", is_flag=True, help="Output in JSON format")
@click.option("--expired", is_flag=True, help="Show only expired certificates")
@click.pass_context
def cert_list(ctx: click.Context, as_json: bool, expired: bool) -> None:
    """List user certificates."""
    now = datetime.now(UTC)
    result = _store(ctx).list_certificates().map(
        lambda certs: tuple(c for c in certs if c.is_expired(now)) if expired else certs
    )

    def render(certs: tuple[UserCertificate, ...]) -> None:
        if as_json:
            _echo_json([_certificate_dict(c) for c in certs])
            return
        if not certs:
            console.print("No expired certificates." if expired else "No user certificates.")
            return
        table = Table(title="User certificates")
        table.add_column("Name", style="bold")
        table.add_column("Subject")
        table.add_column("Expires")
        table.add_column("Status")
        for c in certs:
            state = "[red]expired[/red]" if c.is_expired(now) else "[green]valid[/green]"
            table.add_row(escape(c.name), escape(c.subject), c.expires.date().isoformat(), state)
        console.print(table)

    _finish(result, render, as_json)


@cert.command("remove")
@click.argument("name")
@click.pass_context
def cert_remove(ctx: click.Context, name: str) -> None:
    """Remove a certificate from the store."""
    result = _store(ctx).remove_certificate(name, create_context(_settings(ctx)))
    _finish(
        result,
        lambda entry: console.print(f"[green]✓[/green] Removed certificate [bold]{escape(entry.name)}[/bold]"),
        hints={ErrorCode.BUNDLE_STALE: "Run 'certstore bundle rebuild' to recover."},
    )


@cert.command("inspect")
@click.argument("name")
@click.option("--json", "as_json", is_flag=True, help="Output in JSON format")
@click.pass_context
def cert_inspect(ctx: click.Context, name: str, as_json: bool) -> None:
    """Show details of a stored certificate."""
    store = _store(ctx)
    now = datetime.now(UTC)

    def render(entry: UserCertificate) -> None:
        data = {**_certificate_dict(entry), "expired": entry.is_expired(now), "file": str(store.paths.certs / entry.path)}
        if as_json:
            _echo_json(data)
            return
        console.print(f"[bold]{escape(entry.name)}[/bold]")
        _field("Subject", entry.subject)
        _field("Fingerprint", entry.fingerprint)
        _field("Added", _timestamp(entry.added))
        _field("Expires", _timestamp(entry.expires) + (" (expired)" if data["expired"] else ""))
        _field("File", data["file"])

    _finish(store.get_certificate_info(name), render, as_json)


# ──────────────────────── bundle ────────────────────────


@cli.group()
def bundle() -> None:
    """Base and combined bundle commands."""


@bundle.command("info")
@click.option("--json", "as_json", is_flag=True, help="Output in JSON format")
@click.pass_context
def bundle_info(ctx: click.Context, as_json: bool) -> None:
    """Show base bundle information."""
    store = _store(ctx)

    def render(record: Metadata) -> None:
        path = store.paths.base_bundle
        size = path.stat().st_size if path.is_file() else 0
        data = {**record.base_bundle.model_dump(mode="json"), "path": str(path), "size_bytes": size}
        if as_json:
            _echo_json(data)
            return
        console.print("[bold]Base CA bundle[/bold]")
        _field("Source", record.base_bundle.source)
        if record.base_bundle.version:
            _field("Version", record.base_bundle.version)
        _field("Certificates", record.base_bundle.cert_count)
        _field("Size", _format_bytes(size))
        _field("Generated", _timestamp(record.base_bundle.generated))
        _field("File", path)
        _field("SHA256", record.base_bundle.sha256)

    _finish(store.get_metadata(), render, as_json)


@bundle.command("update")
@click.option("--url", default=None, help="Download from this URL instead of the configured one")
@click.option("--allow-degraded", is_flag=True, help="Accept a bundle with markedly fewer certificates")
@click.pass_context
def bundle_update(ctx: click.Context, url: str | None, allow_degraded: bool) -> None:
    """Download a fresh base bundle and rebuild."""
    settings = _settings(ctx)
    store = _store(ctx)
    previous = store.get_metadata().map(lambda record: record.base_bundle.cert_count).get_or_else(0)
    err_console.print(f"Downloading CA bundle from {escape(url or settings.bundle.url)}...")

    def render(record: Metadata) -> None:
        diff = record.base_bundle.cert_count - previous
        console.print("[green]✓[/green] Bundle updated")
        _field("Source", record.base_bundle.source)
        if record.base_bundle.version:
            _field("Mozilla date", record.base_bundle.version)
        _field("Certificates", f"{record.base_bundle.cert_count} ({diff:+d} from previous)")

    _finish(
        create_refresh(settings, store, url=url, allow_degraded=allow_degraded)(),
        render,
        hints={ErrorCode.INVALID_FORMAT: "Use --allow-degraded to accept the bundle anyway."},
    )


@bundle.command("reset")
@click.pass_context
def bundle_reset(ctx: click.Context) -> None:
    """Restore the embedded base bundle."""
    result = _store(ctx).reset_base_bundle(create_context(_settings(ctx)))
    _finish(
        result,
        lambda record: console.print(
            f"[green]✓[/green] Base bundle reset ({record.base_bundle.cert_count} certificates)"
        ),
    )


@bundle.command("rebuild")
@click.pass_context
def bundle_rebuild(ctx: click.Context) -> None:
    """Regenerate the combined bundle from the files on disk."""
    result = _store(ctx).rebuild(create_context(_settings(ctx)))
    _finish(
        result,
        lambda record: console.print(
            f"[green]✓[/green] Combined bundle rebuilt ({record.combined_bundle.cert_count} certificates)"
        ),
    )


@bundle.command("watch")
@click.option("--cron", default=None, help="5-field cron expression (default from settings)")
@click.pass_context
def bundle_watch(ctx: click.Context, cron: str | None) -> None:
    """Refresh the base bundle on a schedule until interrupted."""
    settings = _settings(ctx)
    if cron is not None:
        try:
            settings = settings.with_overrides(scheduler={"cron": cron, "run_on_startup": settings.scheduler.run_on_startup})
        except ValidationError as e:
            err_console.print(f"[red]Error:[/red] {escape(str(e))}")
            raise SystemExit(int(ExitCode.CONFIG)) from e
    store = create_store(settings)

    def start(_: object) -> None:
        scheduler = create_scheduler(
            create_refresh(settings, store),
            cron=settings.scheduler.cron,
            run_on_startup=settings.scheduler.run_on_startup,
        )
        err_console.print(f"Watching for bundle updates ({escape(settings.scheduler.cron)}). Ctrl+C to stop.")
        scheduler.start()

    _finish(store.get_metadata(), start)


# ──────────────────────── env / status / doctor / clean ────────────────────────


@cli.command()
@click.pass_context
def env(ctx: click.Context) -> None:
    """Regenerate env.sh, which points common tools at the combined bundle."""
    store = _store(ctx)
    result = store.get_metadata().flat_map(
        lambda _: generate_env_file(store.paths.root, store.paths.combined_bundle)
    )

    def render(path: Path) -> None:
        console.print(f"[green]✓[/green] Wrote {escape(str(path))}", soft_wrap=True)
        console.print(f"Run: [bold]source {escape(str(path))}[/bold]", soft_wrap=True)

    _finish(result, render)


def _status(store: Store) -> dict[str, Any]:
    status: dict[str, Any] = {
        "store_location": str(store.paths.root),
        "initialized": store.is_initialized(),
    }
    loaded = store.get_metadata()
    if loaded.is_failure():
        if status["initialized"]:
            status["error"] = str(loaded.error())
        return status
    record = loaded.value()
    bundle_path = store.paths.combined_bundle
    status["user_certificates"] = {
        "count": len(record.user_certificates),
        "certs": [_certificate_dict(c) for c in record.user_certificates],
    }
    status["combined_bundle"] = {
        **record.combined_bundle.model_dump(mode="json"),
        "path": str(bundle_path),
        "size_bytes": bundle_path.stat().st_size if bundle_path.is_file() else 0,
    }
    status["base_bundle"] = record.base_bundle.model_dump(mode="json")
    status["env_file"] = {"path": str(store.paths.env_file), "exists": store.paths.env_file.is_file()}
    return status


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output in JSON format")
@click.pass_context
def status(ctx: click.Context, as_json: bool) -> None:
    """Show the store status."""
    data = _status(_store(ctx))
    if as_json:
        _echo_json(data)
        return
    console.print("[bold]Certificate store status[/bold]")
    _field("Location", data["store_location"])
    _field("Initialized", data["initialized"])
    if not data["initialized"]:
        console.print("\nStore is not initialized. Run 'certstore init' to initialize.")
        return
    if "error" in data:
        console.print(f"\n[red]Metadata unreadable:[/red] {escape(data['error'])}")
        return
    combined = data["combined_bundle"]
    _field("User certs", data["user_certificates"]["count"])
    _field("Certificates", combined["cert_count"])
    _field("Sources", ", ".join(combined["sources"]))
    _field("Size", _format_bytes(combined["size_bytes"]))
    _field("Bundle", combined["path"])
    _field("Base source", data["base_bundle"]["source"])
    _field("env.sh", "present" if data["env_file"]["exists"] else "missing (run 'certstore env')")


def _print_report(report: HealthReport) -> None:
    console.print("[bold]Certificate store diagnostics[/bold]\n")
    for check in report.checks:
        console.print(f"{_STATUS_ICONS[check.status]} {escape(check.name)}")
        if check.status is not HealthStatus.PASS:
            for issue in check.issues:
                console.print(f"    - {escape(issue)}", soft_wrap=True)
            for suggestion in check.suggestions:
                console.print(f"    → {escape(suggestion)}", soft_wrap=True)
    counts = {s: sum(1 for c in report.checks if c.status is s) for s in HealthStatus}
    console.print(
        f"\n{len(report.checks)} checks: {counts[HealthStatus.PASS]} passed, "
        f"{counts[HealthStatus.WARN]} warnings, {counts[HealthStatus.FAIL]} failures"
    )
    console.print(f"Status: {report.status.name}")


def _report_dict(report: HealthReport) -> dict[str, Any]:
    return {
        "root": report.root,
        "status": report.status.value,
        "overall_pass": report.healthy,
        "checks": [
            {
                "name": c.name,
                "status": c.status.value,
                "issues": list(c.issues),
                "suggestions": list(c.suggestions),
            }
            for c in report.checks
        ],
    }


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output in JSON format")
@click.pass_context
def doctor(ctx: click.Context, as_json: bool) -> None:
    """Diagnose problems with the store."""
    store = _store(ctx)
    if not store.is_initialized():
        _fail(store.get_metadata().error(), as_json, "Run 'certstore init' first.")
    report = run_diagnostics(store)
    if as_json:
        _echo_json(_report_dict(report))
    else:
        _print_report(report)
    if not report.healthy:
        raise SystemExit(int(ExitCode.GENERAL))


@cli.command()
@click.option("--full", is_flag=True, help="Remove the entire store")
@click.option("--force", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def clean(ctx: click.Context, full: bool, force: bool) -> None:
    """Remove leftover temporary files, or the whole store with --full."""
    store = _store(ctx)
    if not full:
        _finish(
            store.clean_temporary_files(create_context(_settings(ctx))),
            lambda removed: console.print(f"[green]✓[/green] Removed {len(removed)} temporary file(s)"),
        )
        return
    if not store.paths.root.exists():
        console.print("Certificate store does not exist.")
        return
    if not force and not click.confirm(
        f"Permanently delete the certificate store at {store.paths.root}?", default=False
    ):
        console.print("Aborted. Certificate store was not removed.")
        return
    _finish(store.destroy(), lambda root: console.print(f"[green]✓[/green] Removed {escape(str(root))}", soft_wrap=True))
