"""Scheduled backup script (cron / task scheduler).

Usage (from repo root):
  python -m scripts.backup --dest backups/

Runs hourly without harm: the backup is skipped while the last one is
less than a day old. Archives are encrypted when LOGVAULT_PASSPHRASE is set.
"""
from __future__ import annotations
from pathlib import Path
import click
from config import settings
from logvault.cli.commands import setup_logging
from logvault.lib.archive import ArchiveError
from logvault.lib.backup import run_backup
from logvault.lib.state import BackupState
from logvault.lib.store import LocalStore, StoreError

@click.command()
@click.option('--dest', type=click.Path(file_okay=False, path_type=Path), default=None, help='Destination directory for backups.')
@click.option('--store', 'store_path', type=click.Path(file_okay=False, path_type=Path), default=None, help='Local store directory.')
@click.option('--passphrase', default=None, help='Encrypt the archive (default: $LOGVAULT_PASSPHRASE).')
def main(dest: Path | None, store_path: Path | None, passphrase: str | None):
	setup_logging()
	try:
		outcome = run_backup(LocalStore(store_path), BackupState(), dest or settings.backup_dir(),
			passphrase=passphrase or settings.passphrase())
	except (StoreError, ArchiveError, OSError) as e:
		click.echo(f"Error: {e}")
		raise SystemExit(1)
	if outcome.status == 'written':
		click.echo(f"Backup written: {outcome.path}")
	elif outcome.status == 'failed':
		click.echo(f"Backup failed: {outcome.message}")
		raise SystemExit(1)
	else:
		click.echo(outcome.message)

if __name__ == '__main__':  # pragma: no cover
	main()
