"""Configuration system for proctree."""

import os
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, TypeVar

import tomlkit

ROOT_PID_ENV = "PROCTREE_ROOT_PID"

_Section = TypeVar("_Section")


@dataclass
class PollingConfig:
    """Snapshot polling configuration."""

    interval: float = 1.0  # Seconds between snapshots
    load_every: int = 4  # Run the CPU load pass every N cycles
    listing_timeout: float = 10.0  # Max seconds for one process listing

    def __post_init__(self) -> None:
        if self.interval <= 0:
            raise ValueError(f"interval must be > 0, got {self.interval}")
        if self.load_every < 1:
            raise ValueError(f"load_every must be >= 1, got {self.load_every}")
        if self.listing_timeout <= 0:
            raise ValueError(f"listing_timeout must be > 0, got {self.listing_timeout}")


@dataclass
class TreeConfig:
    """Reconciliation behaviour."""

    keep_terminated: bool = False  # Keep exited processes as [[ ghost ]] nodes
    reveal_new: bool = True  # Ask the view to scroll to newly discovered processes


@dataclass
class SystemConfig:
    """Log file rotation."""

    log_max_bytes: int = 5 * 1024 * 1024
    log_backup_count: int = 3


def _to_table(section: object) -> tomlkit.items.Table:
    table = tomlkit.table()
    for f in fields(section):  # type: ignore[arg-type]
        table.add(f.name, getattr(section, f.name))
    return table


def _from_table(section_cls: type[_Section], section: str, data: Any) -> _Section:
    """Build a section from a TOML table; missing keys keep the dataclass default.

    A value must have the type of its default. Integers are accepted for
    float fields, so ``interval = 2`` still yields a float.
    """
    if not isinstance(data, Mapping):
        raise ValueError(f"[{section}] must be a table")
    defaults = section_cls()
    values = {}
    for f in fields(defaults):  # type: ignore[arg-type]
        if f.name not in data:
            continue
        kind = type(getattr(defaults, f.name))
        value = data[f.name]
        if isinstance(value, tomlkit.items.Item):
            value = value.unwrap()
        # bool is an int subclass; keep numbers and booleans apart
        accepted = isinstance(value, bool) == (kind is bool) and (
            isinstance(value, kind) or (kind is float and isinstance(value, int))
        )
        if not accepted:
            raise ValueError(f"[{section}] {f.name} must be {kind.__name__}")
        values[f.name] = kind(value)
    return section_cls(**values)


@dataclass
class Config:
    """Main configuration container."""

    polling: PollingConfig = field(default_factory=PollingConfig)
    tree: TreeConfig = field(default_factory=TreeConfig)
    system: SystemConfig = field(default_factory=SystemConfig)

    @property
    def config_dir(self) -> Path:
        return Path.home() / ".config" / "proctree"

    @property
    def config_path(self) -> Path:
        return self.config_dir / "config.toml"

    @property
    def state_dir(self) -> Path:
        """Where the rotating log lives."""
        return Path.home() / ".local" / "state" / "proctree"

    @property
    def log_path(self) -> Path:
        return self.state_dir / "proctree.log"

    def save(self, path: Path | None = None) -> None:
        """Write every section to ``path`` (default: config_path)."""
        target = path or self.config_path
        target.parent.mkdir(parents=True, exist_ok=True)

        doc = tomlkit.document()
        for f in fields(self):
            section = getattr(self, f.name)
            if is_dataclass(section):
                doc.add(f.name, _to_table(section))
                doc.add(tomlkit.nl())
        target.write_text(tomlkit.dumps(doc))

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Read a TOML config, falling back to defaults for anything missing.

        Raises:
            ValueError: The file is not valid TOML, or a value has the wrong
                type or is out of range. The message names the file.
        """
        source = path or cls().config_path
        if not source.exists():
            return cls()

        try:
            data = tomlkit.parse(source.read_text())
        except tomlkit.exceptions.TOMLKitError as e:
            raise ValueError(f"Failed to parse config file {source}: {e}") from e

        try:
            return cls(
                polling=_from_table(PollingConfig, "polling", data.get("polling", {})),
                tree=_from_table(TreeConfig, "tree", data.get("tree", {})),
                system=_from_table(SystemConfig, "system", data.get("system", {})),
            )
        except ValueError as e:
            raise ValueError(f"{source}: {e}") from e


def default_root_pid() -> int:
    """Root pid from PROCTREE_ROOT_PID, else the parent of this process."""
    value = os.environ.get(ROOT_PID_ENV)
    if not value:
        return os.getppid()
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{ROOT_PID_ENV} must be a pid, got {value!r}") from None
