import io
import os
import hashlib
import time
import tempfile
import subprocess
import unittest
import doctest
from pathlib import Path
from unittest import mock

import capsync

def hash_directory(root:Path) -> str:
	hasher = hashlib.sha256()
	for dir, dirnames, filenames in os.walk(root):
		dirnames.sort()
		filenames.sort()
		hasher.update(os.path.relpath(dir, root).encode())
		for file in filenames:
			file_path = os.path.join(dir, file)
			hasher.update(os.path.relpath(file_path, root).encode())
			with open(file_path, "rb") as f:
				hasher.update(f.read())
	return hasher.hexdigest()

def create_file_structure(root_dir:Path, structure:dict) -> None:
	'''Recursively creates a directory structure with files.'''
	root_dir.mkdir(parents=True, exist_ok=True)
	for name, content in structure.items():
		file_path = root_dir / name
		if isinstance(content, Path):
			# create symlink
			os.symlink(content, file_path)
		elif isinstance(content, dict):
			# create dir
			create_file_structure(file_path, content)
		elif isinstance(content, (tuple, list)):
			# Create file with size and modtime
			file_path.write_bytes(b"x" * content[0])
			mtime = float(content[1])
			os.utime(file_path, (mtime, mtime))
		elif content is None:
			# Create an empty file
			file_path.touch()
		else:
			# Create a file with content
			file_path.write_text(content)

class FakeRsync:
	'''Stands in for the rsync executable. Records each command and the exclusion list it was given.'''

	def __init__(self, returncode:int = 0) -> None:
		self.returncode = returncode
		self.commands   : list[list[str]] = []
		self.lists      : list[Path]      = []
		self.raw        : list[bytes]     = []
		self.excluded   : list[list[str]] = []

	def __call__(self, command:list[str]) -> subprocess.CompletedProcess:
		self.commands.append(command)
		list_file = Path(command[command.index("--exclude-from") + 1])
		self.lists.append(list_file)
		self.raw.append(list_file.read_bytes())
		self.excluded.append(capsync.read_exclusion_list(list_file))
		return subprocess.CompletedProcess(command, self.returncode)

def load_tests(loader, tests, ignore):
	tests.addTests(doctest.DocTestSuite(capsync))
	return tests

def records(*entries) -> list[capsync.FileRecord]:
	return [capsync.FileRecord(relpath, size, mtime) for relpath, size, mtime in entries]

class TestParseCapacity(unittest.TestCase):
	def test_valid(self):
		self.assertEqual(capsync.parse_capacity("100"), 100)
		self.assertEqual(capsync.parse_capacity("0"), 0)
		self.assertEqual(capsync.parse_capacity("1M"), 1048576)
		self.assertEqual(capsync.parse_capacity("1m"), 1048576)
		self.assertEqual(capsync.parse_capacity("2G"), 2 * 1073741824)
		self.assertEqual(capsync.parse_capacity("3g"), 3 * 1073741824)
		self.assertEqual(capsync.parse_capacity("007"), 7)
		self.assertEqual(capsync.parse_capacity(4096), 4096)
		self.assertEqual(capsync.parse_capacity(0), 0)

	def test_invalid(self):
		for value in ["", "-5", "5X", " 5", "5 ", "5MB", "1.5G", "M", "G5", "five", None, -1, True, 1.5]:
			with self.subTest(value=value):
				with self.assertRaises(capsync.InvalidCapacityError):
					capsync.parse_capacity(value)

	def test_is_value_error(self):
		with self.assertRaises(ValueError):
			capsync.parse_capacity("lots")

#~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

class TestResolveRoots(unittest.TestCase):
	def setUp(self):
		self._tmp = tempfile.TemporaryDirectory()
		self.root = Path(self._tmp.name).resolve()
		create_file_structure(self.root, {
			"src": {"1.txt": None},
			"dst": {},
			"file": None,
		})

	def tearDown(self):
		self._tmp.cleanup()

	def test_resolves(self):
		src, dst = capsync.resolve_roots(str(self.root / "src" / ".." / "src"), self.root / "dst")
		self.assertEqual(src, self.root / "src")
		self.assertEqual(dst, self.root / "dst")
		self.assertTrue(src.is_absolute())

	def test_follows_symlinked_root(self):
		os.symlink(self.root / "src", self.root / "link")
		src, dst = capsync.resolve_roots(self.root / "link", self.root / "dst")
		self.assertEqual(src, self.root / "src")

	def test_bad_source(self):
		for src in [None, "", self.root / "missing", self.root / "file"]:
			with self.subTest(src=src):
				with self.assertRaises(capsync.InvalidSourceError):
					capsync.resolve_roots(src, self.root / "dst")

	def test_bad_destination(self):
		for dst in [None, "", self.root / "missing", self.root / "file"]:
			with self.subTest(dst=dst):
				with self.assertRaises(capsync.InvalidDestinationError):
					capsync.resolve_roots(self.root / "src", dst)
		self.assertFalse((self.root / "missing").exists())

	def test_same_location(self):
		with self.assertRaises(capsync.SameLocationError):
			capsync.resolve_roots(self.root / "src", self.root / "src")
		os.symlink(self.root / "src", self.root / "link")
		with self.assertRaises(capsync.SameLocationError):
			capsync.resolve_roots(self.root / "src", self.root / "link")

#~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

class TestScan(unittest.TestCase):
	def setUp(self):
		self._tmp = tempfile.TemporaryDirectory()
		self.root = Path(self._tmp.name).resolve()

	def tearDown(self):
		self._tmp.cleanup()

	def test_scan(self):
		create_file_structure(self.root, {
			"a": {
				"aa": {
					"1.txt": (10, 1000),
				},
				"2.txt": (20, 2000),
				"empty": {},
			},
			"b.txt": (30, 3000),
			"with space.txt": (5, 4000),
		})
		os.symlink(self.root / "b.txt", self.root / "link.txt")
		os.symlink(self.root / "a", self.root / "linkdir")

		inventory = capsync.scan(self.root)

		self.assertEqual(
			sorted(inventory),
			[
				capsync.FileRecord("a/2.txt", 20, 2000.0),
				capsync.FileRecord("a/aa/1.txt", 10, 1000.0),
				capsync.FileRecord("b.txt", 30, 3000.0),
				capsync.FileRecord("with space.txt", 5, 4000.0),
			]
		)
		for record in inventory:
			self.assertFalse(record.relpath.startswith("./"))
			self.assertFalse(os.path.isabs(record.relpath))

	def test_does_not_change_directory(self):
		create_file_structure(self.root, {"a": {"1.txt": None}})
		cwd = os.getcwd()
		capsync.scan(self.root)
		self.assertEqual(os.getcwd(), cwd)

	def test_empty(self):
		self.assertEqual(capsync.scan(self.root), [])

	def test_unreadable_directory_is_skipped(self):
		create_file_structure(self.root, {
			"ok": {"1.txt": (1, 1)},
			"locked": {"2.txt": (2, 2)},
		})
		real_scandir = os.scandir
		locked = self.root / "locked"

		def scandir(path):
			if Path(path) == locked:
				raise PermissionError(13, "Permission denied", str(path))
			return real_scandir(path)

		errors = []
		with mock.patch.object(capsync.os, "scandir", side_effect=scandir):
			with self.assertLogs("capsync", level="WARNING") as logs:
				inventory = capsync.scan(self.root, errors=errors)

		self.assertEqual(inventory, [capsync.FileRecord("ok/1.txt", 1, 1.0)])
		self.assertEqual(len(errors), 1)
		self.assertIsInstance(errors[0], capsync.ScanEntryError)
		self.assertEqual(errors[0].relpath, "locked")
		self.assertIsInstance(errors[0].error, PermissionError)
		self.assertIn("locked", logs.output[0])

	def test_progress(self):
		create_file_structure(self.root, {f"{i}.txt": None for i in range(5)})
		with mock.patch.object(capsync, "SCAN_REPORT_INTERVAL", 2):
			with self.assertLogs("capsync", level="INFO") as logs:
				inventory = capsync.scan(self.root)
		self.assertEqual(len(inventory), 5)
		progress = [line for line in logs.output if "scanned" in line]
		self.assertEqual(progress, ["INFO:capsync:scanned 2 files", "INFO:capsync:scanned 4 files"])

#~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

class TestSelect(unittest.TestCase):
	inventory = records(
		("old.bin",    5, 10),
		("newest.txt", 40, 50),
		("mid.txt",    30, 40),
		("small.txt",  1, 30),
		("big.iso",    90, 20),
	)

	def test_scenario(self):
		result = capsync.select(records(("a", 40, 3), ("b", 30, 2), ("c", 50, 1)), 60)
		self.assertEqual(result.included, ["a"])
		self.assertEqual(result.excluded, ["b", "c"])
		self.assertEqual(result.included_bytes, 40)
		self.assertEqual(result.included_files, 1)
		self.assertEqual(result.excluded_bytes, 80)
		self.assertEqual(result.excluded_files, 2)

	def test_everything_fits(self):
		total = sum(record.size for record in self.inventory)
		for capacity in [total, total + 1, 10 * total]:
			with self.subTest(capacity=capacity):
				result = capsync.select(self.inventory, capacity)
				self.assertEqual(result.excluded, [])
				self.assertEqual(result.included, ["newest.txt", "mid.txt", "small.txt", "big.iso", "old.bin"])
				self.assertEqual(result.included_bytes, total)
				self.assertEqual(result.excluded_bytes, 0)

	def test_zero_capacity(self):
		result = capsync.select(self.inventory, 0)
		self.assertEqual(result.included, [])
		self.assertEqual(result.excluded, ["newest.txt", "mid.txt", "small.txt", "big.iso", "old.bin"])
		self.assertEqual(result.included_files, 0)
		self.assertEqual(result.excluded_files, 5)

	def test_stops_at_first_miss(self):
		# small.txt and old.bin would fit in what is left, but come after big.iso
		result = capsync.select(self.inventory, 80)
		self.assertEqual(result.included, ["newest.txt", "mid.txt", "small.txt"])
		self.assertEqual(result.excluded, ["big.iso", "old.bin"])

		result = capsync.select(self.inventory, 70)
		self.assertEqual(result.included, ["newest.txt", "mid.txt"])
		self.assertEqual(result.excluded, ["small.txt", "big.iso", "old.bin"])

	def test_empty_file_after_miss_is_excluded(self):
		result = capsync.select(records(("a", 10, 3), ("b", 10, 2), ("c", 0, 1)), 15)
		self.assertEqual(result.included, ["a"])
		self.assertEqual(result.excluded, ["b", "c"])

	def test_zero_capacity_excludes_empty_files(self):
		result = capsync.select(records(("empty.log", 0, 5), ("a.txt", 10, 1)), 0)
		self.assertEqual(result.included, [])
		self.assertEqual(result.excluded, ["empty.log", "a.txt"])
		self.assertEqual(result.excluded_files, 2)

	def test_empty_files_fit_before_a_miss(self):
		result = capsync.select(records(("a", 0, 3), ("b", 5, 2)), 1)
		self.assertEqual(result.included, ["a"])
		self.assertEqual(result.excluded, ["b"])

	def test_partition_and_monotonic_stop(self):
		total = sum(record.size for record in self.inventory)
		relpaths = {record.relpath for record in self.inventory}
		for capacity in range(total + 2):
			with self.subTest(capacity=capacity):
				result = capsync.select(self.inventory, capacity)
				self.assertEqual(set(result.included) | set(result.excluded), relpaths)
				self.assertFalse(set(result.included) & set(result.excluded))
				self.assertEqual(result.included_bytes + result.excluded_bytes, total)
				self.assertLessEqual(result.included_bytes, capacity)
				# the included files are exactly a newest-first prefix
				ordered = result.included + result.excluded
				self.assertEqual(ordered, ["newest.txt", "mid.txt", "small.txt", "big.iso", "old.bin"])

	def test_ties_in_name_order(self):
		inventory = records(("c", 1, 5), ("a", 1, 5), ("b", 1, 5), ("z", 1, 6))
		result = capsync.select(inventory, 2)
		self.assertEqual(result.included, ["z", "a"])
		self.assertEqual(result.excluded, ["b", "c"])
		self.assertEqual(capsync.select(list(reversed(inventory)), 2), result)

	def test_empty_inventory(self):
		result = capsync.select([], 100)
		self.assertEqual(result, capsync.SelectionResult([], [], 0, 0, 0, 0))

#~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

class TestExclusionList(unittest.TestCase):
	def test_round_trip(self):
		relpaths = ["plain.txt", "dir/with space.txt", "line\nbreak.txt", "café/日本.txt", "tab\there"]
		with capsync.write_exclusion_list(relpaths) as list_file:
			self.assertTrue(list_file.exists())
			self.assertEqual(list_file.read_bytes().count(b"\0"), len(relpaths) - 1)
			self.assertFalse(list_file.read_bytes().endswith(b"\0"))
			self.assertEqual(capsync.read_exclusion_list(list_file), relpaths)
		self.assertFalse(list_file.exists())

	def test_empty(self):
		with capsync.write_exclusion_list([]) as list_file:
			self.assertEqual(list_file.read_bytes(), b"")
			self.assertEqual(capsync.read_exclusion_list(list_file), [])
		self.assertFalse(list_file.exists())

	def test_removed_on_error(self):
		with self.assertRaises(KeyboardInterrupt):
			with capsync.write_exclusion_list(["a"]) as list_file:
				raise KeyboardInterrupt()
		self.assertFalse(list_file.exists())

	def test_entries_are_anchored(self):
		# "notes.txt" alone would also match an included "docs/notes.txt"
		with capsync.write_exclusion_list(["notes.txt", "docs/old/notes.txt"]) as list_file:
			self.assertEqual(list_file.read_bytes(), b"/notes.txt\0/docs/old/notes.txt")
			self.assertEqual(capsync.read_exclusion_list(list_file), ["notes.txt", "docs/old/notes.txt"])

	def test_wildcards_are_escaped(self):
		relpaths = ["take[1].wav", "what?.txt", "a*b", "back\\slash[x]", "plain\\name"]
		with capsync.write_exclusion_list(relpaths) as list_file:
			self.assertEqual(
				list_file.read_bytes().split(b"\0"),
				[b"/take\\[1].wav", b"/what\\?.txt", b"/a\\*b", b"/back\\\\slash\\[x]", b"/plain\\name"]
			)
			self.assertEqual(capsync.read_exclusion_list(list_file), relpaths)

#~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

class TestMirror(unittest.TestCase):
	src = Path("/data/src")
	dst = Path("/backup/dst")

	def test_command(self):
		command = capsync.rsync_command(self.src, self.dst, Path("/tmp/list"), capsync.MirrorOptions())
		self.assertEqual(command, [
			"rsync", "-0", "--delete", "--delete-excluded", "-a", "-h", "-m",
			"--progress", "-v",
			"--exclude-from", "/tmp/list",
			"/data/src/", "/backup/dst",
		])

	def test_command_options(self):
		options = capsync.MirrorOptions(dry_run=True, quiet=True, rsync="/opt/bin/rsync")
		command = capsync.rsync_command(self.src, self.dst, Path("/tmp/list"), options)
		self.assertEqual(command[0], "/opt/bin/rsync")
		self.assertIn("--dry-run", command)
		self.assertNotIn("--progress", command)
		self.assertNotIn("-v", command)

	def test_mirror(self):
		rsync = FakeRsync()
		completed = capsync.mirror(self.src, self.dst, ["b", "c d"], capsync.MirrorOptions(quiet=True), runner=rsync)
		self.assertEqual(completed.returncode, 0)
		self.assertEqual(rsync.excluded, [["b", "c d"]])
		self.assertFalse(rsync.lists[0].exists())

	def test_dry_run_is_logged(self):
		rsync = FakeRsync()
		with self.assertLogs("capsync", level="INFO") as logs:
			capsync.mirror(self.src, self.dst, [], capsync.MirrorOptions(dry_run=True), runner=rsync)
		self.assertIn("--dry-run", rsync.commands[0])
		self.assertTrue(any("dry run mode" in line for line in logs.output))
		self.assertFalse(rsync.lists[0].exists())

	def test_failure(self):
		rsync = FakeRsync(returncode=23)
		with self.assertRaises(capsync.TransferError) as cm:
			capsync.mirror(self.src, self.dst, ["a"], capsync.MirrorOptions(), runner=rsync)
		self.assertEqual(cm.exception.returncode, 23)
		self.assertEqual(cm.exception.command, rsync.commands[0])
		self.assertIn("23", str(cm.exception))
		self.assertFalse(rsync.lists[0].exists())

	def test_missing_rsync(self):
		lists = []

		def runner(command):
			lists.append(Path(command[command.index("--exclude-from") + 1]))
			raise FileNotFoundError(2, "No such file or directory", command[0])

		with self.assertRaises(capsync.TransferError) as cm:
			capsync.mirror(self.src, self.dst, ["a"], capsync.MirrorOptions(rsync="no-such-rsync"), runner=runner)
		self.assertEqual(cm.exception.returncode, 127)
		self.assertFalse(lists[0].exists())

	def test_interrupted(self):
		lists = []

		def runner(command):
			lists.append(Path(command[command.index("--exclude-from") + 1]))
			raise KeyboardInterrupt()

		with self.assertRaises(KeyboardInterrupt):
			capsync.mirror(self.src, self.dst, ["a"], capsync.MirrorOptions(), runner=runner)
		self.assertFalse(lists[0].exists())

#~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

class TestSync(unittest.TestCase):
	def setUp(self):
		self._tmp = tempfile.TemporaryDirectory()
		self.root = Path(self._tmp.name).resolve()
		create_file_structure(self.root, {
			"src": {
				"docs": {
					"report.txt": (400, 3000),
					"notes.txt": (300, 2000),
				},
				"old.txt": (50, 1000),
			},
			"dst": {
				"stale.txt": "left over",
			},
		})
		self.src = self.root / "src"
		self.dst = self.root / "dst"

	def tearDown(self):
		self._tmp.cleanup()

	def test_sync(self):
		rsync = FakeRsync()
		results = capsync.sync(self.src, self.dst, "500", runner=rsync, quiet=True, veryquiet=True)

		self.assertTrue(results.success)
		self.assertEqual(results.src_root, self.src)
		self.assertEqual(results.dst_root, self.dst)
		self.assertEqual(results.capacity, 500)
		self.assertEqual(results.scanned_files, 3)
		self.assertEqual(results.included_files, 1)
		self.assertEqual(results.included_bytes, 400)
		self.assertEqual(results.excluded_files, 2)
		self.assertEqual(results.excluded_bytes, 350)
		self.assertEqual(results.returncode, 0)
		self.assertEqual(results.errors, [])

		self.assertEqual(rsync.excluded, [["docs/notes.txt", "old.txt"]])
		self.assertEqual(results.command, rsync.commands[0])
		self.assertEqual(rsync.commands[0][-2:], [f"{self.src}/", str(self.dst)])
		self.assertIn("--delete-excluded", rsync.commands[0])
		self.assertNotIn("--progress", rsync.commands[0])
		self.assertFalse(rsync.lists[0].exists())

	def test_capacity_units(self):
		rsync = FakeRsync()
		results = capsync.sync(str(self.src), str(self.dst), "1M", runner=rsync, quiet=True, veryquiet=True)
		self.assertTrue(results.success)
		self.assertEqual(results.capacity, 1048576)
		self.assertEqual(rsync.excluded, [[]])

	def test_summary_is_logged(self):
		rsync = FakeRsync()
		with self.assertLogs("capsync", level="INFO") as logs:
			capsync.sync(self.src, self.dst, 500, runner=rsync, quiet=True, veryquiet=True)
		messages = [record.getMessage() for record in logs.records]
		self.assertIn(f"from: {self.src}", messages)
		self.assertIn(f"to:   {self.dst}", messages)
		self.assertIn("including:             400 bytes (        1 files)", messages)
		self.assertIn("excluding:             350 bytes (        2 files)", messages)
		self.assertIn("complete", messages)

	def test_dry_run(self):
		hash_dst_old = hash_directory(self.dst)
		rsync = FakeRsync()
		results = capsync.sync(self.src, self.dst, "0", dry_run=True, runner=rsync, quiet=True, veryquiet=True)
		self.assertTrue(results.success)
		self.assertIn("--dry-run", rsync.commands[0])
		self.assertEqual(rsync.excluded, [["docs/report.txt", "docs/notes.txt", "old.txt"]])
		self.assertFalse(rsync.lists[0].exists())
		self.assertEqual(hash_directory(self.dst), hash_dst_old)

	def test_same_location(self):
		rsync = FakeRsync()
		with mock.patch.object(capsync, "scan") as scan:
			with self.assertLogs("capsync", level="CRITICAL") as logs:
				results = capsync.sync(self.src, self.root / "src" / "docs" / "..", "1G", runner=rsync, quiet=True, veryquiet=True)
		self.assertFalse(results.success)
		scan.assert_not_called()
		self.assertEqual(rsync.commands, [])
		self.assertIn("same place", logs.output[0])

	def test_invalid_input(self):
		cases = [
			(self.root / "missing", self.dst, "1G"),
			(self.src, self.root / "missing", "1G"),
			(self.src, self.dst, "5X"),
			(self.src, self.dst, None),
			(None, self.dst, "1G"),
		]
		for src, dst, capacity in cases:
			with self.subTest(src=src, dst=dst, capacity=capacity):
				rsync = FakeRsync()
				results = capsync.sync(src, dst, capacity, runner=rsync, quiet=True, veryquiet=True)
				self.assertFalse(results.success)
				self.assertEqual(rsync.commands, [])
		self.assertFalse((self.root / "missing").exists())

	def test_bad_argument_type(self):
		results = capsync.sync(self.src, self.dst, "1G", dry_run="yes", runner=FakeRsync(), quiet=True, veryquiet=True)
		self.assertFalse(results.success)

	def test_transfer_failure(self):
		rsync = FakeRsync(returncode=12)
		with self.assertLogs("capsync", level="ERROR") as logs:
			results = capsync.sync(self.src, self.dst, "1G", runner=rsync, quiet=True, veryquiet=True)
		self.assertFalse(results.success)
		self.assertEqual(results.returncode, 12)
		self.assertEqual(results.command, rsync.commands[0])
		self.assertEqual(len(results.errors), 1)
		self.assertIn("rsync returned: 12", logs.output[0])
		self.assertFalse(rsync.lists[0].exists())

	def test_log_file(self):
		log_file = self.root / "capsync.log"
		results = capsync.sync(self.src, self.dst, "500", runner=FakeRsync(), log=log_file, quiet=True, veryquiet=True)
		self.assertTrue(results.success)
		self.assertEqual(results.log_file, log_file)
		text = log_file.read_text(encoding="utf-8")
		self.assertIn("INFO: including:", text)
		self.assertIn("INFO: complete", text)

	def test_existing_log_file(self):
		log_file = self.root / "capsync.log"
		log_file.write_text("keep me")
		rsync = FakeRsync()
		with self.assertLogs("capsync", level="INFO") as logs:
			results = capsync.sync(self.src, self.dst, "500", runner=rsync, log=log_file, quiet=True, veryquiet=True)
		self.assertFalse(results.success)
		self.assertEqual(rsync.commands, [])
		self.assertEqual(log_file.read_text(), "keep me")
		self.assertFalse(any("Log file:" in line for line in logs.output))

	@unittest.skipIf(os.name == "nt", "no space-padded day of month on Windows")
	def test_console_date_format(self):
		when = time.strptime("2015-05-08 13:14:04", "%Y-%m-%d %H:%M:%S")
		self.assertEqual(time.strftime(capsync._LOG_DATEFMT, when), "Fri May  8 13:14:04 2015")

	def test_same_name_in_subdirectory_is_kept(self):
		create_file_structure(self.src, {
			"readme.txt": (300, 500),
			"docs": {
				"readme.txt": (10, 5000),
			},
		})
		rsync = FakeRsync()
		results = capsync.sync(self.src, self.dst, "800", runner=rsync, quiet=True, veryquiet=True)
		self.assertTrue(results.success)
		self.assertEqual(results.included_files, 4)
		self.assertEqual(rsync.excluded, [["readme.txt"]])
		# anchored, so the newer docs/readme.txt is neither skipped nor deleted
		self.assertEqual(rsync.raw, [b"/readme.txt"])

	def test_stdout(self):
		rsync = FakeRsync()
		stdout = io.StringIO()
		with mock.patch("sys.stdout", stdout):
			results = capsync.sync(self.src, self.dst, "500", runner=rsync, veryquiet=False)
		self.assertTrue(results.success)
		self.assertIn("including:", stdout.getvalue())
		self.assertIn("--progress", rsync.commands[0])

	def test_handlers_removed(self):
		handlers = list(capsync.logger.handlers)
		capsync.sync(self.src, self.dst, "500", runner=FakeRsync(), quiet=True, veryquiet=True)
		capsync.sync(self.src, self.src, "500", runner=FakeRsync(), quiet=True, veryquiet=True)
		self.assertEqual(capsync.logger.handlers, handlers)

#~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

class TestCommandLine(unittest.TestCase):
	def test_arguments(self):
		with mock.patch.object(capsync, "sync") as sync:
			capsync.sync_cmd(["--src", "a", "--dst", "b", "--capacity", "10G", "--dry-run", "-qq", "--log", "--rsync", "/usr/bin/rsync"])
		sync.assert_called_once_with(
			"a",
			"b",
			"10G",
			dry_run   = True,
			rsync     = "/usr/bin/rsync",
			log       = "auto",
			debug     = False,
			quiet     = True,
			veryquiet = True,
		)

	def test_defaults(self):
		with mock.patch.object(capsync, "sync") as sync:
			capsync.sync_cmd([])
		sync.assert_called_once_with(
			None,
			None,
			None,
			dry_run   = False,
			rsync     = "rsync",
			log       = None,
			debug     = False,
			quiet     = False,
			veryquiet = False,
		)

	def test_single_quiet(self):
		args = capsync._ArgParser.parse(["--quiet", "--debug"])
		self.assertTrue(args.quiet)
		self.assertFalse(args.veryquiet)
		self.assertTrue(args.debug)

	def test_exit_status(self):
		results = capsync.Results()
		with mock.patch.object(capsync, "sync_cmd", return_value=results):
			with self.assertRaises(SystemExit) as cm:
				capsync.main()
		self.assertEqual(cm.exception.code, 1)

		results.success = True
		with mock.patch.object(capsync, "sync_cmd", return_value=results):
			with self.assertRaises(SystemExit) as cm:
				capsync.main()
		self.assertEqual(cm.exception.code, 0)

if __name__ == "__main__":
	unittest.main()
