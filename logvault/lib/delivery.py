"""Deliver a finished archive to the backup directory within a time limit."""
from __future__ import annotations
import os, threading, logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from pathlib import Path
from config.settings import DOWNLOAD_TIMEOUT

log = logging.getLogger(__name__)

class DeliveryError(Exception): ...

@dataclass
class DeliveryResult:
	path: Path
	size: int

	def details(self) -> dict:
		return {"path": str(self.path), "size": self.size}

def _write(data: bytes, target: Path, abort: threading.Event) -> DeliveryResult:
	target.parent.mkdir(parents=True, exist_ok=True)
	tmp = target.with_name(target.name + '.part')
	try:
		tmp.write_bytes(data)
		if abort.is_set():
			raise DeliveryError('aborted')
		os.replace(tmp, target)
	finally:
		if tmp.exists():
			tmp.unlink()
	return DeliveryResult(target, len(data))

def deliver(data: bytes, dest_dir: Path, filename: str, timeout: float = DOWNLOAD_TIMEOUT) -> DeliveryResult:
	"""Write `data` to dest_dir/filename atomically.

	Raises DeliveryError if the write fails or does not finish in `timeout`
	seconds; an aborted write never leaves a partial file behind.
	"""
	target = Path(dest_dir) / filename
	abort = threading.Event()
	pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix='logvault-delivery')
	try:
		future = pool.submit(_write, data, target, abort)
		try:
			return future.result(timeout=timeout)
		except FutureTimeout:
			abort.set()
			raise DeliveryError(f"Download aborted after {timeout:g} seconds")
		except OSError as e:
			raise DeliveryError(f"Download failed: {e}")
	finally:
		pool.shutdown(wait=False)
