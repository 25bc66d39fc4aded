#!/usr/bin/env python3
"""
Example script showing how to drive a backup from Python code.

It loads the configuration, attaches an observer that prints events, runs a
single session through the launcher and prints the summary.

Usage:
    python run_example.py /path/to/folder
"""

import sys
from pathlib import Path

# Add src to Python path so we can import our modules
sys.path.insert(0, str(Path(__file__).parent / "src"))

from drive_backup.auth.credentials import CredentialStore
from drive_backup.config.settings import BackupConfig
from drive_backup.service.launcher import BackupLauncher
from drive_backup.utils.logging import setup_logging


def print_event(event):
    """Print the events a UI would normally render."""
    event_type = event["type"]
    if event_type == "native_progress":
        print(f"   {event['status']}")
    elif event_type == "file_done":
        print(f"   ✅ {event['fileName']}")
    elif event_type == "file_skipped":
        print(f"   ⏭️  {event['fileName']} ({event['reason']})")
    elif event_type in ("file_error", "error"):
        print(f"   ❌ {event.get('fileName', 'session')}: {event['message']}")


def main():
    """Run one backup session of the folder given on the command line."""
    if len(sys.argv) != 2:
        print(__doc__)
        return 2

    config_path = Path("config/config.yaml")
    credentials_path = Path("config/credentials.yaml")

    print("🚀 Drive Backup Tool - Example Run")
    print("=" * 60)

    backup_config = BackupConfig.from_yaml(config_path) if config_path.exists() else BackupConfig()
    setup_logging(backup_config.log_level.value, backup_config.log_file)

    if not credentials_path.exists():
        print("⚠️  Credentials file not found - using environment variables")

    launcher = BackupLauncher(backup_config, CredentialStore(credentials_path))
    launcher.channel.subscribe(print_event)
    launcher.start_service()
    launcher.start(sys.argv[1], backup_config.max_file_size_mb,
                   backup_config.reverify, backup_config.device_id)
    try:
        result = launcher.wait()
    except KeyboardInterrupt:
        launcher.stop()
        result = launcher.wait()
    finally:
        launcher.shutdown()

    if result is None:
        return 1

    counters = result.counters
    print("\n📊 Summary:")
    print(f"   Status: {result.state.value} ({result.status})")
    print(f"   Uploaded: {counters.uploaded}")
    print(f"   Skipped: {counters.skipped_hash + counters.skipped_size}")
    print(f"   Errors: {counters.errors}")
    print(f"   Session log: {result.log_file}")
    return 0 if result.status == "ok" else 1


if __name__ == "__main__":
    sys.exit(main())
