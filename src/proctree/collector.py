"""Process snapshots built from the platform's process-listing utility."""

import asyncio
import codecs
import os
import re
import signal
import sys
import time
from collections.abc import Callable
from dataclasses import dataclass, field

import psutil
import structlog

from proctree.config import Config
from proctree.names import classify

log = structlog.get_logger()

READ_CHUNK = 64 * 1024

POSIX_LISTING = ["/bin/ps", "-ax", "-o", "pid=,ppid=,pcpu=,pmem=,command="]
WINDOWS_LISTING = [
    "wmic",
    "process",
    "get",
    "CommandLine,ParentProcessId,ProcessId,WorkingSetSize",
]
WINDOWS_LOAD = [
    "wmic",
    "path",
    "win32_perfformatteddata_perfproc_process",
    "where",
    "PercentProcessorTime > 0",
    "get",
    "IDProcess,PercentProcessorTime",
]

# pid ppid pcpu pmem command...
POSIX_ROW = re.compile(r"^\s*([0-9]+)\s+([0-9]+)\s+([0-9]+\.[0-9]+)\s+([0-9]+\.[0-9]+)\s+(.+)$")
# CommandLine ParentProcessId ProcessId WorkingSetSize
WINDOWS_ROW = re.compile(r"^(.+)\s+([0-9]+)\s+([0-9]+)\s+([0-9]+)$")
# IDProcess PercentProcessorTime
WINDOWS_LOAD_ROW = re.compile(r"^([0-9]+)\s+([0-9]+)$")

_LINE_SPLIT = re.compile(r"\r?\n")


class EnumerationError(Exception):
    """A process listing failed; the whole snapshot is discarded."""


class SpawnError(EnumerationError):
    """The listing utility could not be started."""


class ExitCodeError(EnumerationError):
    """The listing utility exited with a non-zero status."""

    def __init__(self, code: int) -> None:
        super().__init__(f"process terminated with exit code: {code}")
        self.code = code


class SignalError(EnumerationError):
    """The listing utility was killed by a signal."""

    def __init__(self, signum: int) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        super().__init__(f"process terminated with signal: {name}")
        self.signum = signum


class StderrError(EnumerationError):
    """The listing utility wrote to stderr."""


class ListingTimeoutError(EnumerationError):
    """The listing utility did not finish in time and was killed."""


class RootNotFoundError(EnumerationError):
    """The listing completed but did not contain the root pid."""

    def __init__(self, root_pid: int) -> None:
        super().__init__(f"root process {root_pid} not found")
        self.root_pid = root_pid


@dataclass
class ProcessRecord:
    """One process from a single snapshot, linked to its children."""

    pid: int
    ppid: int
    command: str
    name: str
    load: float | None = None  # CPU percent
    mem_mb: float | None = None
    children: list["ProcessRecord"] = field(default_factory=list)


@dataclass(frozen=True)
class ListingRow:
    """A parsed line of listing output."""

    pid: int
    ppid: int
    command: str
    load: float | None
    mem_mb: float | None


class LineBuffer:
    """Reassembles complete lines from arbitrarily split chunks of output.

    The unfinished tail of each chunk is held back and prepended to the next
    one. Decoding is incremental so multi-byte characters may straddle chunks.
    """

    def __init__(self, encoding: str = "utf-8") -> None:
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._unfinished = ""

    def feed(self, chunk: bytes) -> list[str]:
        """Add a chunk and return the lines it completed."""
        lines = _LINE_SPLIT.split(self._unfinished + self._decoder.decode(chunk))
        self._unfinished = lines.pop()
        return lines

    def flush(self) -> list[str]:
        """Return the final unterminated line, if any."""
        rest = self._unfinished + self._decoder.decode(b"", final=True)
        self._unfinished = ""
        return [rest] if rest else []


class SnapshotBuilder:
    """Links listing rows into a tree rooted at ``root_pid``.

    A row is kept only if it is the root or its parent has already been
    added. Listings are not sorted by ancestry, so a child that is printed
    before its parent is dropped for this snapshot.
    """

    def __init__(
        self,
        root_pid: int,
        namer: Callable[[str], str] = classify,
    ) -> None:
        self.root_pid = root_pid
        self.root: ProcessRecord | None = None
        self._namer = namer
        self._records: dict[int, ProcessRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def get(self, pid: int) -> ProcessRecord | None:
        return self._records.get(pid)

    def add(
        self,
        pid: int,
        ppid: int,
        command: str,
        load: float | None = None,
        mem_mb: float | None = None,
    ) -> ProcessRecord | None:
        """Register a row; returns the record, or None if it was dropped."""
        if pid in self._records:
            return None
        parent = self._records.get(ppid) if ppid != pid else None
        if pid != self.root_pid and parent is None:
            return None

        record = ProcessRecord(
            pid=pid,
            ppid=ppid,
            command=command,
            name=self._namer(command),
            load=load,
            mem_mb=mem_mb,
        )
        self._records[pid] = record
        if pid == self.root_pid:
            self.root = record
        elif parent is not None:
            parent.children.append(record)
        return record

    def set_load(self, pid: int, load: float) -> bool:
        """Attach a CPU sample to an already registered pid."""
        record = self._records.get(pid)
        if record is None:
            return False
        record.load = load
        return True


def parse_posix_row(line: str, total_mb: float) -> ListingRow | None:
    """Parse one ``ps`` line; memory percent is converted to MB."""
    match = POSIX_ROW.match(line.strip())
    if match is None:
        return None
    return ListingRow(
        pid=int(match.group(1)),
        ppid=int(match.group(2)),
        command=match.group(5),
        load=float(match.group(3)),
        mem_mb=total_mb / 100 * float(match.group(4)),
    )


def parse_windows_row(line: str) -> ListingRow | None:
    """Parse one ``wmic process`` line; working set bytes become MB."""
    match = WINDOWS_ROW.match(line.strip())
    if match is None:
        return None
    return ListingRow(
        pid=int(match.group(3)),
        ppid=int(match.group(2)),
        command=match.group(1).strip(),
        load=None,
        mem_mb=int(match.group(4)) / 1024 / 1024,
    )


def parse_load_row(line: str) -> tuple[int, int] | None:
    """Parse one ``pid percent`` line from the load pass; percents are whole numbers."""
    match = WINDOWS_LOAD_ROW.match(line.strip())
    if match is None:
        return None
    return int(match.group(1)), int(match.group(2))


async def _drain(proc: asyncio.subprocess.Process, on_line: Callable[[str], None]) -> bytes:
    """Feed stdout to ``on_line`` line by line; return everything on stderr."""
    assert proc.stdout is not None and proc.stderr is not None

    async def read_stdout() -> None:
        buffer = LineBuffer()
        while True:
            chunk = await proc.stdout.read(READ_CHUNK)
            if not chunk:
                break
            for line in buffer.feed(chunk):
                on_line(line)
        for line in buffer.flush():
            on_line(line)

    _, stderr = await asyncio.gather(read_stdout(), proc.stderr.read())
    await proc.wait()
    return stderr


async def run_listing(
    argv: list[str],
    on_line: Callable[[str], None],
    timeout: float | None = None,
) -> None:
    """Run a listing utility, streaming its stdout lines to ``on_line``.

    Raises:
        EnumerationError: One of its subclasses for spawn failure, stderr
            output, termination by signal, non-zero exit or timeout.
    """
    env = {**os.environ, "LC_ALL": "C"}
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
        )
    except OSError as e:
        raise SpawnError(f"{argv[0]}: {e.strerror or e}") from e

    try:
        stderr = await asyncio.wait_for(_drain(proc, on_line), timeout=timeout)
    except asyncio.TimeoutError:
        raise ListingTimeoutError(f"{argv[0]} did not finish within {timeout}s") from None
    finally:
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass  # Already exited
            await proc.wait()

    if stderr:
        raise StderrError(stderr.decode("utf-8", errors="replace").strip())
    code = proc.returncode
    if code is not None and code < 0:
        raise SignalError(-code)
    if code:
        raise ExitCodeError(code)


class LoadSampler:
    """CPU-only enumeration joined into a snapshot by pid.

    This is the expensive pass, so callers run it on a reduced cadence. On
    POSIX the regular listing already reports CPU percent and the sampler
    has nothing to add.
    """

    def __init__(self, config: Config, windows: bool) -> None:
        self.config = config
        self._windows = windows

    @property
    def command(self) -> list[str] | None:
        return WINDOWS_LOAD if self._windows else None

    async def sample(self, builder: SnapshotBuilder) -> int:
        """Attach load values to ``builder``; returns how many pids were updated."""
        if self.command is None:
            return 0

        applied = 0

        def on_line(line: str) -> None:
            nonlocal applied
            parsed = parse_load_row(line)
            if parsed is not None and builder.set_load(*parsed):
                applied += 1

        await run_listing(self.command, on_line, timeout=self.config.polling.listing_timeout)
        return applied


class ProcessCollector:
    """Collects process snapshots rooted at a pid."""

    def __init__(self, config: Config, platform: str = sys.platform) -> None:
        self.config = config
        self._windows = platform == "win32"
        self.load_sampler = LoadSampler(config, windows=self._windows)
        self._total_mb: float | None = None

    @property
    def listing_command(self) -> list[str]:
        return WINDOWS_LISTING if self._windows else POSIX_LISTING

    @property
    def total_mb(self) -> float:
        """Physical memory in MB, used to turn ``ps`` memory percent into MB."""
        if self._total_mb is None:
            self._total_mb = psutil.virtual_memory().total / 1024 / 1024
        return self._total_mb

    def parse_row(self, line: str) -> ListingRow | None:
        if self._windows:
            return parse_windows_row(line)
        return parse_posix_row(line, self.total_mb)

    async def collect(self, root_pid: int, with_load: bool = False) -> ProcessRecord:
        """Take one snapshot of the tree below ``root_pid``.

        Raises:
            EnumerationError: The listing failed or did not contain the root.
        """
        start = time.monotonic()
        builder = SnapshotBuilder(root_pid)
        skipped = 0

        def on_line(line: str) -> None:
            nonlocal skipped
            if not line.strip():
                return
            row = self.parse_row(line)
            if row is None:
                skipped += 1
                return
            builder.add(row.pid, row.ppid, row.command, row.load, row.mem_mb)

        timeout = self.config.polling.listing_timeout
        await run_listing(self.listing_command, on_line, timeout=timeout)
        if with_load:
            await self.load_sampler.sample(builder)

        if builder.root is None:
            raise RootNotFoundError(root_pid)

        log.debug(
            "snapshot_collected",
            root_pid=root_pid,
            processes=len(builder),
            skipped_lines=skipped,
            with_load=with_load,
            elapsed_ms=round((time.monotonic() - start) * 1000),
        )
        return builder.root
