"""Display names for processes, derived from their command lines.

The rules are an ordered table evaluated first-match-wins. Each rule pairs a
compiled pattern with a formatter that turns the match into a name; a
formatter may return None to let the next rule try.
"""

import re
from collections.abc import Callable
from dataclasses import dataclass

# Device and UNC prefixes reported by Windows for some executables
_DEVICE_PREFIXES = ("\\\\?\\", "\\??\\")

RENDERER_HINT = re.compile(r"--disable-blink-features=Auxclick")
JS_FILE = re.compile(r"[a-zA-Z-]+\.js")
NODE_TOKENS = ("node ", "node.exe")


@dataclass(frozen=True)
class NameRule:
    """One entry of the classification table."""

    name: str
    pattern: re.Pattern[str]
    format: Callable[[re.Match[str], str], str | None]


def strip_device_prefix(command: str) -> str:
    """Remove a leading ``\\\\?\\`` or ``\\??\\`` prefix, keeping a leading quote."""
    for prefix in _DEVICE_PREFIXES:
        if command.startswith(prefix):
            return command[len(prefix) :]
        if command.startswith('"' + prefix):
            return '"' + command[len(prefix) + 1 :]
    return command


def has_node_token(command: str) -> bool:
    """Whether the command line invokes a node binary directly."""
    return any(token in command for token in NODE_TOKENS)


def _fixed(label: str) -> Callable[[re.Match[str], str], str]:
    return lambda match, command: label


def _electron_type(match: re.Match[str], command: str) -> str:
    kind = match.group(1)
    if kind == "renderer":
        return "renderer" if RENDERER_HINT.search(command) else "shared-process"
    return kind


def _script_names(match: re.Match[str], command: str) -> str | None:
    if has_node_token(command):
        return None
    # Trailing space matches the label format users already know
    return "electron_node " + "".join(f"{m} " for m in JS_FILE.findall(command))


RULES: tuple[NameRule, ...] = (
    NameRule(
        "windows-watcher",
        re.compile(r"\\watcher\\win32\\CodeHelper\.exe"),
        _fixed("watcherService"),
    ),
    NameRule(
        "crash-reporter",
        re.compile(r"--crashes-directory"),
        _fixed("electron-crash-reporter"),
    ),
    NameRule("winpty", re.compile(r"\\pipe\\winpty-control"), _fixed("winpty-process")),
    NameRule(
        "console-host",
        re.compile(r"conhost\.exe"),
        _fixed("console-window-host (Windows internal process)"),
    ),
    NameRule("electron-type", re.compile(r"--type=([a-zA-Z-]+)"), _electron_type),
    NameRule("scripts", JS_FILE, _script_names),
)


def classify(command: str, rules: tuple[NameRule, ...] = RULES) -> str:
    """Map a raw command line to a short display name.

    Falls back to the command line itself (device prefix removed) when no
    rule produces a name.
    """
    command = strip_device_prefix(command)
    for rule in rules:
        match = rule.pattern.search(command)
        if match is None:
            continue
        name = rule.format(match, command)
        if name is not None:
            return name
    return command
