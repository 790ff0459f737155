"""Debugger attach configurations and termination signals for tree nodes."""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

import psutil
import structlog

from proctree.tree import DEBUG_FLAGS, ProcessNode, ProcessTree

log = structlog.get_logger()

DEBUG_PORT_OVERRIDE = re.compile(r"\s--(inspect|debug)-port=(\d+)")


class AttachMode(Enum):
    PORT = "port"
    PID = "pid"


class DebugProtocol(Enum):
    INSPECTOR = "inspector"
    LEGACY = "legacy"


class Attachable(Protocol):
    pid: int
    command_line: str


@dataclass(frozen=True)
class DebugLaunchConfig:
    """How an external debugger should attach to one process."""

    attach_mode: AttachMode
    target_pid: int
    port: int | None = None
    protocol: DebugProtocol | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a node attach configuration for the debugger."""
        config: dict[str, Any] = {
            "type": "node",
            "request": "attach",
            "name": f"process {self.target_pid}",
        }
        if self.attach_mode is AttachMode.PORT:
            config["port"] = self.port
        else:
            # No port known: the debugger signals the process to open one
            config["processId"] = str(self.target_pid)
        if self.protocol is not None:
            config["protocol"] = self.protocol.value
        return config


def resolve(node: Attachable) -> DebugLaunchConfig:
    """Derive the attach configuration from a node's command line.

    ``--inspect``/``--debug`` flags select the protocol and may carry a port.
    An explicit ``--inspect-port=N``/``--debug-port=N`` always wins. Without
    any port the debugger attaches by pid.
    """
    port: int | None = None
    protocol: DebugProtocol | None = None

    match = DEBUG_FLAGS.search(node.command_line)
    if match is not None:
        if match.group(1) == "inspect":
            protocol = DebugProtocol.INSPECTOR
        else:
            protocol = DebugProtocol.LEGACY
        if match.group(4):
            port = int(match.group(4)[1:])

    override = DEBUG_PORT_OVERRIDE.search(node.command_line)
    if override is not None:
        port = int(override.group(2))

    return DebugLaunchConfig(
        attach_mode=AttachMode.PORT if port is not None else AttachMode.PID,
        target_pid=node.pid,
        port=port,
        protocol=protocol,
    )


def resolve_children(tree: ProcessTree, node: ProcessNode) -> list[DebugLaunchConfig]:
    """One independent attach configuration per direct child of ``node``."""
    return [resolve(child) for child in tree.children(node)]


def _send(pid: int, force: bool) -> bool:
    action = "force_terminate" if force else "terminate"
    try:
        proc = psutil.Process(pid)
        if force:
            proc.kill()
        else:
            proc.terminate()
    except psutil.Error as e:
        log.debug("signal_failed", action=action, pid=pid, error=str(e))
        return False
    log.info("signal_sent", action=action, pid=pid)
    return True


def terminate(pid: int) -> bool:
    """Ask a process to exit (SIGTERM). Failures are logged, not raised."""
    return _send(pid, force=False)


def force_terminate(pid: int) -> bool:
    """Kill a process immediately (SIGKILL). Failures are logged, not raised."""
    return _send(pid, force=True)
