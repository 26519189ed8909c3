# Copyright (c) 2025 Joe Walter
# GNU General Public License v3.0

import sys
import argparse
import os
import re
import shutil
import logging
import tempfile
import time
import traceback
import subprocess
import contextlib
from pathlib import Path
from typing import NamedTuple, Callable, Iterable, Iterator

logger = logging.getLogger(__name__)
logger.setLevel(logging.DEBUG)

MB = 1024 * 1024
GB = MB * 1024

# how often the scanner reports progress, in files
SCAN_REPORT_INTERVAL = 10000

# space-padded day of month, as in "Fri May  8"; Windows strftime has no %e
_LOG_DATEFMT = "%a %b %d %H:%M:%S %Y" if os.name == "nt" else "%a %b %e %H:%M:%S %Y"

class _DebugInfoFilter(logging.Filter):
	'''Logging filter that only allows DEBUG and INFO records to pass.'''

	def filter(self, record):
		return logging.DEBUG <= record.levelno <= logging.INFO

class CapsyncError(Exception):
	'''Base class of the errors raised by this module.'''

class InvalidSourceError(CapsyncError, ValueError):
	'''The source is missing or is not a directory.'''

class InvalidDestinationError(CapsyncError, ValueError):
	'''The destination is missing or is not a directory. It is never created.'''

class SameLocationError(CapsyncError, ValueError):
	'''The source and destination resolve to the same directory.'''

class InvalidCapacityError(CapsyncError, ValueError):
	'''The capacity is not a non-negative byte count with an optional M or G suffix.'''

class ScanEntryError(CapsyncError):
	'''An entry under the source root that could not be read. It is logged and skipped.'''

	def __init__(self, relpath:str, error:OSError) -> None:
		super().__init__(f"Skipping unreadable entry: {relpath} ({_error_summary(error)})")
		self.relpath = relpath
		self.error   = error

class TransferError(CapsyncError):
	'''rsync exited with a non-zero status.'''

	def __init__(self, returncode:int, command:list[str]) -> None:
		super().__init__(f"rsync returned: {returncode} - consult output above for details")
		self.returncode = returncode
		self.command    = command

class _ArgParser:
	'''Argument parser for when this python file is run with arguments instead of an imported module.'''

	parser = argparse.ArgumentParser(
		description="Mirror the most recently modified files of a directory into another directory with rsync, up to a capacity. Older files that do not fit are excluded, and deleted from the destination if present.",
		epilog="(c) 2025 Joe Walter"
	)

	parser.add_argument("--src", metavar="dir", type=str, default=None, help="The source directory for the files to be backed up.")
	parser.add_argument("--dst", metavar="dir", type=str, default=None, help="The destination directory for the files to be backed up to. It must exist. Any contents in this directory will be deleted and replaced with the files from the source (up to the capacity).")
	parser.add_argument("--capacity", metavar="size", type=str, default=None, help="The amount of data to store in the destination directory. Either bytes, or suffixed with M or G to specify megabytes or gigabytes (binary units). The space actually used at the destination will be somewhat larger because of file and directory overheads, so allow some slack.")
	parser.add_argument("-n", "--dry-run", action="store_true", default=False, help="Do everything except the actual sync. rsync is run in dry run mode as well, so a lot of output will be produced, though no changes will occur.")

	parser.add_argument("--rsync", metavar="path", type=str, default="rsync", help="The rsync executable to run. (Defaults to \"rsync\" on the PATH.)")
	parser.add_argument("--log", metavar="path", nargs="?", type=str, default=None, const="auto", help="The path of the log file to use. With \"auto\" or no argument, a tempfile will be used for the log, and it will be moved to the user's home directory after the backup is done. If this flag is absent, then no log file is written.")
	parser.add_argument("--debug", action="store_true", default=False, help="Log debug messages.")
	parser.add_argument("-q", "--quiet", action="count", default=0, help="Forgo printing to stdout (-q) and stderr (-qq). rsync progress output is also suppressed.")

	@staticmethod
	def parse(args:list[str]) -> argparse.Namespace:
		parsed_args = _ArgParser.parser.parse_args(args)
		parsed_args.veryquiet = parsed_args.quiet >= 2
		parsed_args.quiet     = parsed_args.quiet >= 1
		return parsed_args

class FileRecord(NamedTuple):
	'''A regular file found under the source root.'''

	relpath : str
	size    : int
	mtime   : float

class SelectionResult(NamedTuple):
	'''The partition of an inventory into files that fit the capacity and files that do not, newest first.'''

	included       : list[str]
	excluded       : list[str]
	included_bytes : int
	included_files : int
	excluded_bytes : int
	excluded_files : int

class MirrorOptions(NamedTuple):
	'''Settings for a single rsync invocation.'''

	dry_run : bool = False
	quiet   : bool = False
	rsync   : str  = "rsync"

Runner = Callable[[list[str]], subprocess.CompletedProcess]

class Results:
	'''Various statistics and other information returned by `sync()`.'''

	def __init__(self) -> None:
		self.src_root   : Path | None = None
		self.dst_root   : Path | None = None
		self.capacity   : int  | None = None
		self.log_file   : Path | None = None

		self.success    : bool        = False
		self.errors     : list[str]   = []

		self.scanned_files   = 0
		self.skipped_entries = 0
		self.included_files  = 0
		self.included_bytes  = 0
		self.excluded_files  = 0
		self.excluded_bytes  = 0

		self.command    : list[str] | None = None
		self.returncode : int | None       = None

def sync_cmd(args:list[str]) -> Results:
	'''Run `sync()` with command line arguments.'''

	parsed_args = _ArgParser.parse(args)
	return sync(
		parsed_args.src,
		parsed_args.dst,
		parsed_args.capacity,
		dry_run   = parsed_args.dry_run,
		rsync     = parsed_args.rsync,
		log       = parsed_args.log,
		debug     = parsed_args.debug,
		quiet     = parsed_args.quiet,
		veryquiet = parsed_args.veryquiet
	)

def sync(
		src       : str | os.PathLike[str] | None,
		dst       : str | os.PathLike[str] | None,
		capacity  : str | int | None,
		*,
		dry_run   : bool = False,
		rsync     : str  = "rsync",
		runner    : Runner | None = None,
		log       : str | os.PathLike[str] | None = None,
		debug     : bool = False,
		quiet     : bool = False,
		veryquiet : bool = False,
	) -> Results:
	'''
	Mirrors the most recently modified files of `src` into `dst` with rsync, up to `capacity` bytes. Files are considered newest first. As soon as one file does not fit in the remaining capacity, it and every older file are excluded, even if a later file would have fit. Excluded files are deleted from `dst` if present there, as is anything in `dst` that is not in `src`.

	Args
		src (str or PathLike)    : The source directory. Can be a symlink to a directory.
		dst (str or PathLike)    : The destination directory. Must already exist. Its contents will be replaced.
		capacity (str or int)    : The number of bytes to store in `dst`, either as an int or as a string of digits optionally followed by "M" or "G" (binary megabytes or gigabytes, case-insensitive).
		dry_run (bool)           : Whether to run rsync in dry run mode, so that no file system change is made. The exclusion list is still built. (Defaults to `False`.)
		rsync (str)              : The rsync executable to run. (Defaults to "rsync".)
		runner (callable)        : Called with the rsync command line, returning a `subprocess.CompletedProcess`. (Defaults to running the command with `subprocess.run()`.)

		log (str or PathLike)    : The path of the log file to use. A value of "auto" means a tempfile will be used for the log, and it will be moved to the user's home directory after the backup is done. A value of `None` will skip logging to a file. (Defaults to `None`.)
		debug (bool)             : Whether to log debug messages. (Default to `False`.)
		quiet (bool)             : Whether to forgo printing to stdout, and to run rsync without progress output.
		veryquiet (bool)         : Whether to forgo printing to stdout and stderr.

	Example Console Output
		Fri May  8 13:14:04 2015  rsyncing files
		Fri May  8 13:14:04 2015  from: /Users/username/Documents
		Fri May  8 13:14:04 2015  to:   /private/var/tmp/backup
		Fri May  8 13:14:04 2015  with capacity:     104,857,600 bytes
		Fri May  8 13:14:04 2015  scanned 10,000 files
		Fri May  8 13:14:04 2015  scanned 20,000 files
		Fri May  8 13:14:05 2015  including:     104,818,722 bytes (    9,058 files)
		Fri May  8 13:14:05 2015  excluding:     252,943,315 bytes (   13,550 files)
		(rsync output)
		Fri May  8 13:14:16 2015  complete

	Returns
		A `Results` object containing various statistics.
	'''
	results  = Results()
	handlers : list[logging.Handler] = []

	log_file     = None
	tmp_log_file = None
	handler_file = None

	if veryquiet:
		quiet = True

	if not quiet:
		handler_stdout = logging.StreamHandler(sys.stdout)
		handler_stdout.setFormatter(logging.Formatter("%(asctime)-25s %(message)s", datefmt=_LOG_DATEFMT))
		handler_stdout.addFilter(_DebugInfoFilter())
		if debug:
			handler_stdout.setLevel(logging.DEBUG)
		else:
			handler_stdout.setLevel(logging.INFO)
		handlers.append(handler_stdout)

	if not veryquiet:
		handler_stderr = logging.StreamHandler(sys.stderr)
		handler_stderr.setFormatter(logging.Formatter("%(message)s"))
		handler_stderr.setLevel(logging.WARNING)
		handlers.append(handler_stderr)
	else:
		# keeps logging's last resort handler from printing to stderr
		handlers.append(logging.NullHandler())

	for handler in handlers:
		logger.addHandler(handler)

	try:
		if src is not None and not isinstance(src, (str, os.PathLike)):
			msg = f"Bad type for arg 'src' (expected str or PathLike): {src}"
			raise TypeError(msg)
		if dst is not None and not isinstance(dst, (str, os.PathLike)):
			msg = f"Bad type for arg 'dst' (expected str or PathLike): {dst}"
			raise TypeError(msg)
		if not isinstance(dry_run, bool):
			msg = f"Bad type for arg 'dry_run' (expected bool): {dry_run}"
			raise TypeError(msg)
		if not isinstance(rsync, str) or not rsync:
			msg = f"Bad type for arg 'rsync' (expected non-empty str): {rsync}"
			raise TypeError(msg)
		if log is not None and not isinstance(log, (str, os.PathLike)):
			msg = f"Bad type for arg 'log' (expected str or PathLike): {log}"
			raise TypeError(msg)
		if not isinstance(quiet, bool):
			msg = f"Bad type for arg 'quiet' (expected bool): {quiet}"
			raise TypeError(msg)
		if not isinstance(veryquiet, bool):
			msg = f"Bad type for arg 'veryquiet' (expected bool): {veryquiet}"
			raise TypeError(msg)

		timestamp = str(int(time.time()*1000))
		if log is None:
			log_file = None
		elif log == "auto":
			log_file = Path.home() / f"capsync.{timestamp}.log"
		else:
			log_file = Path(log)
		results.log_file = log_file

		if log_file is not None and os.path.exists(log_file):
			msg = f"Chosen log already exists: {log_file}"
			raise ValueError(msg)

		if log_file is not None:
			with tempfile.NamedTemporaryFile(mode="w+", encoding="utf-8", delete=False) as tmp_log:
				tmp_log_file = Path(tmp_log.name)
			handler_file = logging.FileHandler(tmp_log_file, encoding="utf-8")
			handler_file.setFormatter(logging.Formatter("%(asctime)s %(levelname)s: %(message)s"))
			if debug:
				handler_file.setLevel(logging.DEBUG)
			else:
				handler_file.setLevel(logging.INFO)
			logger.addHandler(handler_file)

		src_root, dst_root = resolve_roots(src, dst)
		capacity_bytes = parse_capacity(capacity)
		results.src_root = src_root
		results.dst_root = dst_root
		results.capacity = capacity_bytes

		logger.debug(f"Starting backup: {src_root=} {dst_root=} {capacity_bytes=} {dry_run=} {rsync=} {log_file=} {debug=} {quiet=} {veryquiet=}")

		logger.info("rsyncing files")
		logger.info(f"from: {src_root}")
		logger.info(f"to:   {dst_root}")
		logger.info(f"with capacity:  {capacity_bytes:>15,} bytes")

		scan_errors : list[ScanEntryError] = []
		inventory = scan(src_root, errors=scan_errors)
		results.scanned_files   = len(inventory)
		results.skipped_entries = len(scan_errors)
		results.errors.extend(str(e) for e in scan_errors)

		selection = select(inventory, capacity_bytes)
		results.included_files = selection.included_files
		results.included_bytes = selection.included_bytes
		results.excluded_files = selection.excluded_files
		results.excluded_bytes = selection.excluded_bytes

		logger.info(f"including: {selection.included_bytes:>15,} bytes ({selection.included_files:>9,} files)")
		logger.info(f"excluding: {selection.excluded_bytes:>15,} bytes ({selection.excluded_files:>9,} files)")

		options   = MirrorOptions(dry_run=dry_run, quiet=quiet, rsync=rsync)
		completed = mirror(src_root, dst_root, selection.excluded, options, runner=runner)
		results.command    = list(completed.args)
		results.returncode = completed.returncode

		logger.info("complete")
		results.success = True

	except KeyboardInterrupt:
		logger.critical("Cancelled by user.")
	except TransferError as e:
		results.command    = e.command
		results.returncode = e.returncode
		msg = f"ERROR: {e}"
		logger.error(msg)
		results.errors.append(msg)
	except (TypeError, ValueError) as e:
		logger.critical(f"Input Error: {e}")
	except Exception as e:
		logger.critical("Unexpected error: " + _error_summary(e))
		logger.critical(traceback.format_exc())

	finally:
		if dry_run:
			logger.info("*** DRY RUN ***")

		if results.skipped_entries:
			logger.info(f"{results.skipped_entries} unreadable entries were skipped.")

		if handler_file:
			logger.info(f"Log file: {log_file}")

		for handler in handlers:
			logger.removeHandler(handler)

		if handler_file:
			logger.removeHandler(handler_file)
			handler_file.close()
			assert tmp_log_file is not None
			assert log_file is not None
			shutil.move(tmp_log_file, log_file)

	return results

def resolve_roots(src:str | os.PathLike[str] | None, dst:str | os.PathLike[str] | None) -> tuple[Path, Path]:
	'''Resolve `src` and `dst` to absolute paths, following symlinks. Both must be existing directories, and must not be the same directory.'''

	if src is None or src == "":
		raise InvalidSourceError("bad or missing --src parameter")
	if dst is None or dst == "":
		raise InvalidDestinationError("bad or missing --dst parameter")

	src_root = Path(src).resolve()
	dst_root = Path(dst).resolve()

	if not src_root.is_dir():
		raise InvalidSourceError(f"bad or missing --src parameter, not a directory: {src_root}")
	if not dst_root.is_dir():
		raise InvalidDestinationError(f"bad or missing --dst parameter, not a directory: {dst_root}")
	if src_root == dst_root:
		raise SameLocationError(f"--src and --dst are the same place: {src_root}")

	return src_root, dst_root

_CAPACITY_RE = re.compile(r"(\d+)([mg]?)", re.IGNORECASE | re.ASCII)
_CAPACITY_UNITS = {"": 1, "m": MB, "g": GB}

def parse_capacity(value:str | int | None) -> int:
	'''
	Convert a capacity to bytes. Strings are digits, optionally suffixed with M or G (binary units, any case).

	>>> parse_capacity("100")
	100
	>>> parse_capacity("1m")
	1048576
	>>> parse_capacity("2G")
	2147483648
	>>> parse_capacity("5X")  # doctest: +IGNORE_EXCEPTION_DETAIL
	Traceback (most recent call last):
	...
	capsync.InvalidCapacityError: bad --capacity parameter: '5X'
	'''

	if value is None or value == "":
		raise InvalidCapacityError("bad or missing --capacity parameter")
	if isinstance(value, bool):
		raise InvalidCapacityError(f"bad --capacity parameter: {value!r}")
	if isinstance(value, int):
		if value < 0:
			raise InvalidCapacityError(f"bad --capacity parameter: {value!r}")
		return value
	if not isinstance(value, str):
		raise InvalidCapacityError(f"bad --capacity parameter: {value!r}")

	match = _CAPACITY_RE.fullmatch(value)
	if match is None:
		raise InvalidCapacityError(f"bad --capacity parameter: {value!r}")
	digits, unit = match.groups()
	return int(digits) * _CAPACITY_UNITS[unit.lower()]

def scan(root:Path, *, errors:list[ScanEntryError] | None = None) -> list[FileRecord]:
	'''
	Retrieves the relative path, size, and mtime of every regular file under `root`.

	Relative paths use "/" as the separator. Symlinks are not followed and are not recorded, nor are sockets, FIFOs, and devices. An entry that cannot be read is logged as a warning, appended to `errors` (if given), and skipped.

	Args
		root (Path)    : The directory to search.
		errors (list)  : Collects a `ScanEntryError` for each skipped entry.
	'''

	inventory : list[FileRecord] = []
	pending = [(Path(root), "")]

	while pending:
		dir, dir_relpath = pending.pop()
		logger.debug(f"scanning: {dir}")

		try:
			with os.scandir(dir) as it:
				entries = sorted(it, key=lambda entry: entry.name)
		except OSError as e:
			_skip_entry(dir_relpath or ".", e, errors)
			continue

		subdirs = []
		for entry in entries:
			relpath = f"{dir_relpath}/{entry.name}" if dir_relpath else entry.name
			try:
				if entry.is_dir(follow_symlinks=False):
					subdirs.append((Path(entry.path), relpath))
					continue
				if not entry.is_file(follow_symlinks=False):
					continue
				stat = entry.stat(follow_symlinks=False)
			except OSError as e:
				_skip_entry(relpath, e, errors)
				continue

			inventory.append(FileRecord(relpath, stat.st_size, stat.st_mtime))
			if len(inventory) % SCAN_REPORT_INTERVAL == 0:
				logger.info(f"scanned {len(inventory):,} files")

		# visit subdirectories in name order
		pending.extend(reversed(subdirs))

	return inventory

def _skip_entry(relpath:str, error:OSError, errors:list[ScanEntryError] | None) -> None:
	skipped = ScanEntryError(relpath, error)
	logger.warning(str(skipped))
	if errors is not None:
		errors.append(skipped)

def select(inventory:Iterable[FileRecord], capacity:int) -> SelectionResult:
	'''
	Split `inventory` into files to back up and files to exclude.

	Files are taken newest first (ties in name order), each one included while it fits in what is left of `capacity`. Once a file does not fit, it and all older files are excluded, so an older file is never backed up in place of a newer one.

	>>> files = [FileRecord("a", 40, 3), FileRecord("b", 30, 2), FileRecord("c", 5, 1)]
	>>> select(files, 60).excluded
	['b', 'c']
	'''

	ordered = sorted(inventory, key=lambda record: (-record.mtime, record.relpath))

	included : list[str] = []
	excluded : list[str] = []
	included_bytes = 0
	excluded_bytes = 0

	remaining = capacity
	# a zero capacity admits nothing, not even empty files
	full = capacity == 0
	for record in ordered:
		if not full and record.size <= remaining:
			remaining -= record.size
			included_bytes += record.size
			included.append(record.relpath)
		else:
			# out of capacity, everything from now on is excluded
			full = True
			remaining = 0
			excluded_bytes += record.size
			excluded.append(record.relpath)

	return SelectionResult(
		included       = included,
		excluded       = excluded,
		included_bytes = included_bytes,
		included_files = len(included),
		excluded_bytes = excluded_bytes,
		excluded_files = len(excluded),
	)

_WILDCARDS_RE = re.compile(r"[*?\[]")
_ESCAPE_RE    = re.compile(r"([*?\[\\])")
_UNESCAPE_RE  = re.compile(r"\\(.)", re.DOTALL)

def _exclude_pattern(relpath:str) -> str:
	'''
	Turn a relative path into an rsync exclude pattern that matches only that path.

	The leading "/" anchors the pattern at the transfer root. rsync only treats a backslash as an escape when the pattern holds a wildcard, so names without one are left as they are.

	>>> _exclude_pattern("docs/notes.txt")
	'/docs/notes.txt'
	>>> _exclude_pattern("take[1]*.wav")
	'/take\\\\[1]\\\\*.wav'
	'''

	if _WILDCARDS_RE.search(relpath):
		relpath = _ESCAPE_RE.sub(r"\\\1", relpath)
	return "/" + relpath

def _relpath_from_pattern(pattern:str) -> str:
	relpath = pattern[1:]
	if _WILDCARDS_RE.search(relpath):
		relpath = _UNESCAPE_RE.sub(r"\1", relpath)
	return relpath

@contextlib.contextmanager
def write_exclusion_list(relpaths:Iterable[str]) -> Iterator[Path]:
	'''
	Write `relpaths` to a temporary file for rsync's `--exclude-from`, separated by null bytes so that any file name survives. Each entry is anchored and escaped so that it excludes exactly one file. The file is deleted when the context exits, however it exits.
	'''

	with tempfile.NamedTemporaryFile(mode="wb", prefix="capsync.", suffix=".exclude", delete=False) as tmp:
		list_file = Path(tmp.name)
	try:
		list_file.write_bytes(b"\0".join(os.fsencode(_exclude_pattern(relpath)) for relpath in relpaths))
		yield list_file
	finally:
		list_file.unlink(missing_ok=True)

def read_exclusion_list(list_file:Path) -> list[str]:
	'''Read back the relative paths in a list written by `write_exclusion_list()`.'''

	data = Path(list_file).read_bytes()
	if not data:
		return []
	return [_relpath_from_pattern(os.fsdecode(pattern)) for pattern in data.split(b"\0")]

def rsync_command(src:Path, dst:Path, exclude_from:Path, options:MirrorOptions) -> list[str]:
	'''
	Build the rsync command line that mirrors the contents of `src` into `dst`, deleting extraneous and excluded files at `dst`.

	>>> rsync_command(Path("/a"), Path("/b"), Path("/tmp/x"), MirrorOptions(dry_run=True, quiet=True))
	['rsync', '-0', '--delete', '--delete-excluded', '-a', '-h', '-m', '--dry-run', '--exclude-from', '/tmp/x', '/a/', '/b']
	'''

	command = [options.rsync, "-0", "--delete", "--delete-excluded", "-a", "-h", "-m"]
	if not options.quiet:
		command += ["--progress", "-v"]
	if options.dry_run:
		command.append("--dry-run")
	command += ["--exclude-from", str(exclude_from)]

	# trailing slash: copy the contents of src, not src itself
	command += [f"{str(src).rstrip('/')}/", str(dst)]
	return command

def _run(command:list[str]) -> subprocess.CompletedProcess:
	return subprocess.run(command, check=False)

def mirror(
		src      : Path,
		dst      : Path,
		excluded : Iterable[str],
		options  : MirrorOptions,
		*,
		runner   : Runner | None = None
	) -> subprocess.CompletedProcess:
	'''
	Run rsync to mirror `src` into `dst`, excluding (and deleting at `dst`) the relative paths in `excluded`.

	Raises `TransferError` if rsync exits with a non-zero status or cannot be started. The exclusion list is removed in every case.
	'''

	if runner is None:
		runner = _run

	with write_exclusion_list(excluded) as list_file:
		command = rsync_command(src, dst, list_file, options)
		if options.dry_run:
			logger.info("Running rsync in dry run mode: " + " ".join(command))
		else:
			logger.debug("Running rsync: " + " ".join(command))
		try:
			completed = runner(command)
		except FileNotFoundError as e:
			logger.debug(_error_summary(e))
			raise TransferError(127, command) from e

	if completed.returncode != 0:
		raise TransferError(completed.returncode, command)
	return completed

def _error_summary(e:BaseException) -> str:
	'''
	Get a one-line summary of an Error.

	>>> _error_summary(PermissionError(13, "Permission denied", "secret.txt"))
	'PermissionError: Permission denied: secret.txt'
	'''

	error_type = type(e).__name__
	if isinstance(e, OSError):
		affected_file = getattr(e, "filename", None) or "N/A"
		reason = e.strerror or str(e)
		return f"{error_type}: {reason}: {affected_file}"
	return f"{error_type}: {e}"

def main() -> None:
	try:
		results = sync_cmd(sys.argv[1:])
	except Exception:
		print()
		traceback.print_exc()
		sys.exit(1)
	sys.exit(0 if results.success else 1)

if __name__ == "__main__":
	main()
