"""Shared test fixtures for proctree."""

import asyncio
from collections.abc import Sequence

import pytest

from proctree.collector import ProcessRecord
from proctree.config import Config
from proctree.names import classify
from proctree.tree import ChangeTarget, ProcessNode


def make_record(
    pid: int,
    command: str = "cmd",
    children: Sequence[ProcessRecord] = (),
    ppid: int = 0,
    load: float | None = None,
    mem_mb: float | None = 1.0,
) -> ProcessRecord:
    """Create a ProcessRecord whose children point back at it."""
    record = ProcessRecord(
        pid=pid,
        ppid=ppid,
        command=command,
        name=classify(command),
        load=load,
        mem_mb=mem_mb,
    )
    for child in children:
        child.ppid = pid
        record.children.append(child)
    return record


class FakeCollector:
    """Returns queued snapshots; the last one repeats. Exceptions are raised."""

    def __init__(self, snapshots: Sequence[ProcessRecord | Exception]) -> None:
        self.snapshots = list(snapshots)
        self.calls: list[bool] = []

    async def collect(self, root_pid: int, with_load: bool = False) -> ProcessRecord:
        self.calls.append(with_load)
        item = self.snapshots.pop(0) if len(self.snapshots) > 1 else self.snapshots[0]
        if isinstance(item, Exception):
            raise item
        return item


class FakeConsumer:
    """Records refresh targets and reveal requests."""

    def __init__(self, active: bool = True, fail_reveal: bool = False) -> None:
        self.active = active
        self.fail_reveal = fail_reveal
        self.targets: list[ChangeTarget] = []
        self.revealed: list[ProcessNode] = []

    def refresh(self, target: ChangeTarget) -> None:
        self.targets.append(target)

    def reveal(self, node: ProcessNode) -> None:
        self.revealed.append(node)
        if self.fail_reveal:
            raise RuntimeError("view is gone")


async def wait_until(condition, timeout=2.0, interval=0.01):
    """Wait until condition() returns True, or timeout."""
    deadline = asyncio.get_event_loop().time() + timeout
    while not condition():
        if asyncio.get_event_loop().time() > deadline:
            raise TimeoutError(f"Condition not met within {timeout}s")
        await asyncio.sleep(interval)


@pytest.fixture
def config() -> Config:
    """Default configuration (never read from disk)."""
    return Config()


@pytest.fixture
def family() -> ProcessRecord:
    """Root 1 with a node app (10) and a shell (11)."""
    return make_record(
        1,
        "/usr/bin/launcher",
        [make_record(10, "node app.js"), make_record(11, "/bin/bash")],
    )
