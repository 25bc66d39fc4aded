"""Command-line interface for the drive backup application."""

import sys
from datetime import datetime
from pathlib import Path
from typing import Optional, Tuple

import click
from rich import print as rprint
from rich.console import Console
from rich.progress import BarColumn, MofNCompleteColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from .auth.credentials import AuthCredential, CredentialStore
from .config.settings import BackupConfig
from .exceptions import BackupError
from .service.launcher import BackupLauncher
from .sync.backup_session import SessionResult, default_client_factory
from .utils.logging import setup_logging
from .utils.session_log import SessionRecorder, list_logs, read_log

# Windows consoles default to a legacy code page
if sys.platform == 'win32':
    sys.stdout.reconfigure(encoding='utf-8', errors='replace')
    sys.stderr.reconfigure(encoding='utf-8', errors='replace')

console = Console()

DEFAULT_CONFIG = Path('config/config.yaml')
DEFAULT_CREDENTIALS = Path('config/credentials.yaml')


def _load_config(config: Path) -> BackupConfig:
    """Load the YAML config, falling back to defaults when it does not exist."""
    if config.exists():
        return BackupConfig.from_yaml(config)
    return BackupConfig()


@click.group()
@click.version_option(version="1.0.0")
def cli():
    """Drive Backup Tool

    Incrementally back up a local folder to a cloud drive. Unchanged files
    are skipped by size and content hash; uploads resume chunk by chunk.
    """
    pass


@cli.command()
@click.argument('root', type=click.Path(path_type=Path))
@click.option('--max-size-mb', '-m',
              type=int,
              default=None,
              help='Skip files larger than this many MB (default from config)')
@click.option('--reverify',
              is_flag=True,
              help='Ignore the local listing cache and re-list the remote folder')
@click.option('--device-id',
              default=None,
              help='Device identifier used for the AppBackup_<id> folder')
@click.option('--config', '-c',
              type=click.Path(path_type=Path),
              default=DEFAULT_CONFIG,
              help='Path to configuration file')
@click.option('--credentials',
              type=click.Path(path_type=Path),
              default=DEFAULT_CREDENTIALS,
              help='Path to credentials file')
def backup(root: Path, max_size_mb: Optional[int], reverify: bool, device_id: Optional[str],
           config: Path, credentials: Path):
    """Back up ROOT to the cloud drive."""
    try:
        with console.status("Loading configuration..."):
            backup_config = _load_config(config)
        setup_logging(backup_config.log_level.value, backup_config.log_file)
        console.print(f"✅ Configuration loaded from {config if config.exists() else 'defaults'}",
                      style="green")

        launcher = BackupLauncher(backup_config, CredentialStore(credentials))
        result = _run_backup(
            launcher,
            str(root),
            max_size_mb or backup_config.max_file_size_mb,
            reverify or backup_config.reverify,
            device_id or backup_config.device_id,
        )
    except Exception as e:
        console.print(f"❌ Error: {e}", style="red bold")
        sys.exit(1)

    if result is None:
        console.print("❌ Backup did not produce a result", style="red bold")
        sys.exit(1)

    _display_backup_result(result)
    if result.status != "ok":
        sys.exit(1)


def _run_backup(launcher: BackupLauncher, root: str, max_size_mb: int, reverify: bool,
                device_id: str) -> Optional[SessionResult]:
    """Run one session on the launcher's worker thread while rendering its events."""
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        console=console,
    ) as progress:
        task = progress.add_task("Scanning...", total=None)

        def observer(event):
            event_type = event.get("type")
            if event_type in ("scan_complete", "native_progress", "native_complete"):
                progress.update(task, total=event["total"], completed=event["processed"],
                                description=event.get("status", "Scanning..."))
            elif event_type == "file_done":
                progress.console.print(f"✅ {event['fileName']}", style="green")
            elif event_type == "file_skipped":
                progress.console.print(f"⏭️  {event['fileName']}: {event['reason']}", style="yellow")
            elif event_type == "file_error":
                progress.console.print(f"❌ {event['fileName']}: {event['message']}", style="red")
            elif event_type == "error":
                progress.console.print(f"❌ {event['message']}", style="red bold")

        launcher.channel.subscribe(observer)
        launcher.start_service()
        try:
            launcher.start(root, max_size_mb, reverify, device_id)
            try:
                while launcher.is_running:
                    launcher.wait(0.5)
            except KeyboardInterrupt:
                progress.console.print("🛑 Stopping backup...", style="yellow bold")
                launcher.stop()
                launcher.wait()
        finally:
            launcher.channel.unsubscribe(observer)
            launcher.shutdown()

    return launcher.last_result


def _display_backup_result(result: SessionResult):
    """Display the session outcome in a table."""
    counters = result.counters
    status_style = "green" if result.status == "ok" else "red"

    table = Table(title="Backup Results")
    table.add_column("Status", style="magenta")
    table.add_column("Files Found", justify="right")
    table.add_column("Processed", justify="right")
    table.add_column("Uploaded", justify="right", style="green")
    table.add_column("Skipped (hash)", justify="right", style="yellow")
    table.add_column("Skipped (size)", justify="right", style="yellow")
    table.add_column("Data Transferred", justify="right")
    table.add_column("Duration", justify="right")
    table.add_column("Errors", justify="right", style="red")
    table.add_row(
        f"[{status_style}]{result.state.value} ({result.status})[/{status_style}]",
        str(result.total),
        str(counters.processed),
        str(counters.uploaded),
        str(counters.skipped_hash),
        str(counters.skipped_size),
        _format_bytes(counters.bytes_uploaded),
        f"{result.duration_ms / 1000:.1f}s",
        str(counters.errors),
    )
    console.print(table)

    if result.error:
        rprint(f"\n⚠️ [red]{result.error}[/red]")
    if result.log_file:
        rprint(f"\n📝 Session log: [cyan]{result.log_file}[/cyan]")


@cli.command()
@click.option('--config', '-c',
              type=click.Path(path_type=Path),
              default=DEFAULT_CONFIG,
              help='Path to configuration file')
@click.option('--credentials',
              type=click.Path(path_type=Path),
              default=DEFAULT_CREDENTIALS,
              help='Path to credentials file')
def test(config: Path, credentials: Path):
    """Test the connection to the drive API with the stored credentials."""
    try:
        backup_config = _load_config(config)
        headers = CredentialStore(credentials).load()
        if not headers:
            console.print("❌ Auth headers not set. Run 'drive-backup set-auth' first.", style="red")
            sys.exit(1)

        console.print("🔍 Testing connection...\n")
        api = default_client_factory(backup_config)(AuthCredential(headers))
        try:
            status = api.probe()
        except BackupError as e:
            status = None
            console.print(f"⚠️ {e}", style="yellow")

        table = Table(title="Connection Test Results")
        table.add_column("Service", style="cyan")
        table.add_column("Status", style="magenta")
        if status is None:
            table.add_row("Drive API", "[red]❌ Unreachable[/red]")
        elif status == 401:
            table.add_row("Drive API", "[red]❌ Unauthorized (401)[/red]")
        elif 200 <= status < 300:
            table.add_row("Drive API", "[green]✅ Connected[/green]")
        else:
            table.add_row("Drive API", f"[yellow]⚠️ HTTP {status}[/yellow]")
        console.print(table)

        if status is None or not 200 <= status < 300:
            sys.exit(1)
        console.print("\n🎉 Connection successful!", style="green bold")

    except (OSError, ValueError) as e:
        console.print(f"❌ Error: {e}", style="red bold")
        sys.exit(1)


@cli.command()
@click.option('--config', '-c',
              type=click.Path(path_type=Path),
              default=DEFAULT_CONFIG,
              help='Path to save configuration file')
def init(config: Path):
    """Initialize a new configuration file."""
    if config.exists():
        if not click.confirm(f"Configuration file {config} already exists. Overwrite?"):
            return

    console.print("🚀 Creating new configuration file...")

    sample_config = {
        'max_file_size_mb': 200,
        'reverify': False,
        'device_id': 'my-laptop',
        'log_level': 'INFO',
        'heartbeat_interval': 30,
        'upload': {
            'chunk_retry_attempts': 3,
            'timeout_retries': 3,
            'auth_failure_threshold': 5,
        },
    }

    backup_config = BackupConfig(**sample_config)
    backup_config.to_yaml(config)

    console.print(f"✅ Configuration saved to {config}", style="green")
    console.print("\n📝 Next steps:")
    console.print("1. Edit the configuration file to match your setup")
    console.print("2. Run 'drive-backup set-auth --token <access token>' to store credentials")
    console.print("3. Run 'drive-backup test' to verify the connection")
    console.print("4. Run 'drive-backup backup <folder>' to start backing up")


@cli.command('set-auth')
@click.option('--header', '-H', 'header_values',
              multiple=True,
              help='Auth header as "Name: value" (repeatable)')
@click.option('--token', '-t',
              default=None,
              help='OAuth access token, stored as a Bearer Authorization header')
@click.option('--credentials',
              type=click.Path(path_type=Path),
              default=DEFAULT_CREDENTIALS,
              help='Path to credentials file')
def set_auth(header_values: Tuple[str, ...], token: Optional[str], credentials: Path):
    """Store the auth headers used for every API request.

    A running backup picks up new headers the next time it refreshes.
    """
    headers = {}
    for value in header_values:
        name, sep, content = value.partition(':')
        if not sep or not name.strip():
            console.print(f"❌ Invalid header '{value}', expected 'Name: value'", style="red")
            sys.exit(1)
        headers[name.strip()] = content.strip()
    if token:
        headers['Authorization'] = f"Bearer {token}"
    if not headers:
        console.print("❌ Nothing to store: pass --header or --token", style="red")
        sys.exit(1)

    CredentialStore(credentials).save(headers)
    console.print(f"✅ Stored {len(headers)} auth header(s) in {credentials}", style="green")


@cli.command('log-level')
@click.argument('level', required=False)
@click.option('--config', '-c',
              type=click.Path(path_type=Path),
              default=DEFAULT_CONFIG,
              help='Path to configuration file')
def log_level(level: Optional[str], config: Path):
    """Show or change the log level (INFO or DEBUG)."""
    backup_config = _load_config(config)
    if level is None:
        console.print(f"Log level: [bold]{backup_config.log_level.value}[/bold]")
        return

    recorder = SessionRecorder(backup_config.log_level)
    if not recorder.set_level(level):
        console.print(f"❌ Unknown log level '{level}' (use INFO or DEBUG)", style="red")
        sys.exit(1)

    backup_config.log_level = recorder.level
    backup_config.to_yaml(config)
    console.print(f"✅ Log level set to {recorder.level.value} in {config}", style="green")


@cli.group()
def logs():
    """Inspect persisted session logs."""
    pass


@logs.command('list')
@click.option('--config', '-c',
              type=click.Path(path_type=Path),
              default=DEFAULT_CONFIG,
              help='Path to configuration file')
def list_session_logs(config: Path):
    """List session logs, newest first."""
    backup_config = _load_config(config)
    entries = list_logs(backup_config.session_log_dir)
    if not entries:
        console.print("No session logs found.", style="yellow")
        return

    table = Table(title=f"Session Logs ({backup_config.session_log_dir})")
    table.add_column("Name", style="cyan")
    table.add_column("Size", justify="right")
    table.add_column("Modified")
    for name, size, modified in entries:
        table.add_row(name, _format_bytes(size),
                      datetime.fromtimestamp(modified).strftime('%Y-%m-%d %H:%M:%S'))
    console.print(table)


@logs.command('show')
@click.argument('name')
@click.option('--config', '-c',
              type=click.Path(path_type=Path),
              default=DEFAULT_CONFIG,
              help='Path to configuration file')
def show_session_log(name: str, config: Path):
    """Print the session log NAME."""
    backup_config = _load_config(config)
    text = read_log(backup_config.session_log_dir, name)
    if text is None:
        console.print(f"❌ Session log '{name}' not found", style="red")
        sys.exit(1)
    click.echo(text)


def _format_bytes(bytes_size: int) -> str:
    """Format bytes as human readable string."""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes_size < 1024.0:
            return f"{bytes_size:.1f} {unit}"
        bytes_size /= 1024.0
    return f"{bytes_size:.1f} PB"


if __name__ == '__main__':
    cli()
