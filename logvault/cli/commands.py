"""CLI commands implemented with click.

- `run`: periodic entry point; offers a restore when the local store is
  empty, then backs up if the last backup is older than a day.
- `backup`, `restore`, `status`: manual operations.
"""
from __future__ import annotations
import logging, click
from datetime import datetime, timezone
from pathlib import Path
from config.settings import LOG_LEVEL, LOG_FORMAT, backup_dir
from logvault.lib.archive import ArchiveError, PassphraseRequired
from logvault.lib.backup import (
	BackupOutcome, RestoreError, inventory, is_store_empty, restore_file, run_backup
)
from logvault.lib.state import BackupState
from logvault.lib.store import LocalStore, StoreError

log = logging.getLogger(__name__)

class _EchoHandler(logging.Handler):
	"""Route log records through click so they follow the active stderr."""
	def emit(self, record):
		try:
			click.echo(self.format(record), err=True)
		except Exception:
			self.handleError(record)

def setup_logging(verbose: bool = False):
	pkg = logging.getLogger('logvault')
	if not any(isinstance(h, _EchoHandler) for h in pkg.handlers):
		handler = _EchoHandler()
		handler.setFormatter(logging.Formatter(LOG_FORMAT))
		pkg.addHandler(handler)
	pkg.setLevel(logging.DEBUG if verbose else LOG_LEVEL)

dest_option = click.option('--dest', type=click.Path(file_okay=False, path_type=Path), default=None,
	help='Directory backups are written to.')
passphrase_option = click.option('--passphrase', envvar='LOGVAULT_PASSPHRASE', default=None,
	help='Encrypt (backup) or decrypt (restore) archives with this passphrase.')

@click.group()
@click.option('--store', 'store_path', type=click.Path(file_okay=False, path_type=Path), default=None,
	help='Local store directory (default: $LOGVAULT_STORE_DIR).')
@click.option('-v', '--verbose', is_flag=True, help='Debug logging.')
@click.pass_context
def cli(ctx, store_path, verbose):
	"""logvault: chat log backup and restore"""
	setup_logging(verbose)
	ctx.obj = LocalStore(store_path)

def _echo_outcome(outcome: BackupOutcome):
	if outcome.status == 'written':
		click.echo(f'Backup written: {outcome.path} ({outcome.size} bytes)')
	elif outcome.status == 'skipped':
		click.echo('Backup skipped; last backup within 24 hours.')
	elif outcome.status == 'nothing':
		click.echo('No databases to back up.')
	else:
		click.echo(f'Backup failed: {outcome.message}')

def _restore(store: LocalStore, path: Path, passphrase: str | None):
	try:
		return restore_file(store, path, passphrase)
	except PassphraseRequired:
		passphrase = click.prompt('Passphrase', hide_input=True)
		return restore_file(store, path, passphrase)

@cli.command()
@dest_option
@passphrase_option
@click.option('--yes', is_flag=True, help='Restore without the confirmation prompt (still asks for the file).')
@click.option('--no-input', is_flag=True, help='Never prompt; only report an empty store.')
@click.pass_obj
def run(store, dest, passphrase, yes, no_input):
	"""Offer a restore if the store is empty, then back up if due."""
	try:
		if is_store_empty(store):
			log.info('Local store is empty; offering restore')
			if no_input:
				click.echo('Local store is empty. Use `logvault restore FILE` to restore from a backup.')
			elif yes or click.confirm('Local store is empty. Restore data from a backup?', default=False):
				log.info('User chose to restore')
				path = click.prompt('Backup file (.json.gz)', type=click.Path(exists=True, dir_okay=False, path_type=Path))
				try:
					_restore(store, path, passphrase)
					click.echo('Data restored successfully!')
				except (RestoreError, ArchiveError):
					click.echo('Failed to restore data. Check the log.')
		_echo_outcome(run_backup(store, BackupState(), dest or backup_dir(), passphrase=passphrase))
	except (StoreError, ArchiveError, OSError) as e:
		log.error('Error during backup or restoration: %s', e)
		click.echo(f'Error: {e}')
		raise SystemExit(1)

@cli.command()
@dest_option
@passphrase_option
@click.option('--force', is_flag=True, help='Back up even if the last backup is recent.')
@click.pass_obj
def backup(store, dest, passphrase, force):
	"""Write a compressed backup of every local database."""
	try:
		outcome = run_backup(store, BackupState(), dest or backup_dir(), force=force, passphrase=passphrase)
	except (StoreError, ArchiveError, OSError) as e:
		click.echo(f'Error: {e}')
		raise SystemExit(1)
	_echo_outcome(outcome)
	if outcome.status == 'failed':
		raise SystemExit(1)

@cli.command('restore')
@click.argument('backup_file', type=click.Path(exists=True, dir_okay=False, path_type=Path))
@passphrase_option
@click.option('--yes', is_flag=True, help='Replace existing records without asking.')
@click.pass_obj
def restore_cmd(store, backup_file, passphrase, yes):
	"""Restore conversations and logs from a .json.gz backup."""
	try:
		if not yes and not is_store_empty(store):
			click.confirm('Local store is not empty; restoring replaces conversations and logs. Continue?', abort=True)
		report = _restore(store, backup_file, passphrase)
	except (RestoreError, ArchiveError, StoreError) as e:
		click.echo(f'Error: {e}')
		raise SystemExit(1)
	click.echo(f'Data restored successfully! ({report.total_added} records, {report.total_skipped} skipped)')

@cli.command()
@click.pass_obj
def status(store):
	"""Show databases, record counts and backup schedule."""
	try:
		dbs = inventory(store)
	except StoreError as e:
		click.echo(f'Error: {e}')
		raise SystemExit(1)
	if not dbs:
		click.echo('No databases.')
	for name, version, stores in dbs:
		click.echo(f'{name} (v{version})')
		for store_name, count in stores:
			click.echo(f'  {store_name}: {count}')
	state = BackupState()
	last = state.last_backup()
	if last is None:
		click.echo('Last backup: never')
	else:
		click.echo(f"Last backup: {datetime.fromtimestamp(last / 1000, timezone.utc).isoformat(timespec='seconds')}")
	now_ms = int(datetime.now(timezone.utc).timestamp() * 1000)
	click.echo(f"Backup due: {'yes' if state.is_due(now_ms) else 'no'}")
