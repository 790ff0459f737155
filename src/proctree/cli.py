"""CLI commands for proctree."""

import click

from proctree.config import ROOT_PID_ENV

pid_option = click.option(
    "--pid",
    "-p",
    type=int,
    default=None,
    envvar=ROOT_PID_ENV,
    help=f"Root process id (default: ${ROOT_PID_ENV} or the parent of this shell)",
)


def _setup(ctx: click.Context, source: str, console: bool):
    """Load config and configure logging for a command."""
    from proctree.config import Config
    from proctree.logging import configure

    config = Config.load()
    verbose = ctx.obj.get("verbose", False)
    configure(config, source=source, console=console and verbose, verbose=verbose)
    return config


def _root_pid(pid: int | None) -> int:
    from proctree.config import default_root_pid

    return pid if pid is not None else default_root_pid()


def _take_snapshot(config, root_pid: int, with_load: bool):
    """Collect one snapshot and merge it into a fresh tree, exiting on failure."""
    import asyncio

    from proctree import logging as console
    from proctree.collector import EnumerationError, ProcessCollector
    from proctree.tree import ProcessTree

    collector = ProcessCollector(config)
    try:
        record = asyncio.run(collector.collect(root_pid, with_load=with_load))
    except EnumerationError as e:
        console.snapshot_failed(root_pid, str(e))
        raise SystemExit(1)

    tree = ProcessTree(root_pid, keep_terminated=config.tree.keep_terminated)
    tree.merge(record)
    return record, tree


@click.group()
@click.version_option(package_name="proctree")
@click.option("--verbose", "-v", is_flag=True, help="Log debug events to stderr")
@click.pass_context
def main(ctx, verbose: bool) -> None:
    """Watch the process tree below a root process."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose


@main.command()
@pid_option
@click.option("--interval", "-i", type=float, default=None, help="Seconds between snapshots")
@click.option(
    "--keep-terminated/--drop-terminated",
    default=None,
    help="Keep exited processes visible as [[ ghost ]] nodes",
)
@click.pass_context
def watch(ctx, pid: int | None, interval: float | None, keep_terminated: bool | None) -> None:
    """Launch the live tree view."""
    from proctree.tui import run_tui

    config = _setup(ctx, source="tui", console=False)
    if interval is not None:
        if interval <= 0:
            raise click.BadParameter("must be > 0", param_hint="--interval")
        config.polling.interval = interval
    if keep_terminated is not None:
        config.tree.keep_terminated = keep_terminated

    run_tui(config, root_pid=_root_pid(pid))


@main.command()
@pid_option
@click.option("--load/--no-load", default=True, help="Include the CPU load pass")
@click.option("--json", "as_json", is_flag=True, help="Print the snapshot as JSON")
@click.pass_context
def snapshot(ctx, pid: int | None, load: bool, as_json: bool) -> None:
    """Print one snapshot of the process tree."""
    import json

    from rich.console import Console
    from rich.markup import escape
    from rich.tree import Tree

    config = _setup(ctx, source="cli", console=True)
    record, tree = _take_snapshot(config, _root_pid(pid), with_load=load)

    if as_json:

        def to_dict(r) -> dict:
            return {
                "pid": r.pid,
                "ppid": r.ppid,
                "name": r.name,
                "command": r.command,
                "load": r.load,
                "mem_mb": r.mem_mb,
                "children": [to_dict(c) for c in r.children],
            }

        click.echo(json.dumps(to_dict(record), indent=2))
        return

    def add(branch: Tree, node) -> None:
        for child in tree.children(node):
            tag = f" [magenta]{child.debug_scope.value}[/]" if child.debug_scope.value else ""
            add(branch.add(f"[dim]{child.pid}[/] {escape(child.label)}{tag}"), child)

    root = Tree(f"[bold]{tree.root.pid}[/] {escape(tree.root.label)}")
    add(root, tree.root)
    Console(highlight=False).print(root)


@main.command()
@click.argument("pid", type=int)
@click.option("--children", is_flag=True, help="Resolve every direct child instead")
@click.pass_context
def attach(ctx, pid: int, children: bool) -> None:
    """Print the debugger attach configuration for PID."""
    import json

    from proctree import logging as console
    from proctree.debug import resolve, resolve_children

    config = _setup(ctx, source="cli", console=True)
    _, tree = _take_snapshot(config, pid, with_load=False)

    configs = resolve_children(tree, tree.root) if children else [resolve(tree.root)]
    if children and not configs:
        console.warn(f"Process [cyan]{pid}[/] has no children")
        return
    for launch in configs:
        console.attach_resolved(launch.target_pid, launch.attach_mode.value)
        click.echo(json.dumps(launch.to_dict()))


@main.command()
@click.argument("pid", type=int)
@click.option("--force", "-f", is_flag=True, help="Kill immediately (SIGKILL)")
@click.pass_context
def kill(ctx, pid: int, force: bool) -> None:
    """Ask PID to terminate."""
    from proctree import logging as console
    from proctree.debug import force_terminate, terminate

    _setup(ctx, source="cli", console=True)
    delivered = force_terminate(pid) if force else terminate(pid)
    console.signal_result(pid, force=force, delivered=delivered)


@main.group()
def config() -> None:
    """Manage configuration."""
    pass


@config.command("show")
def config_show() -> None:
    """Display current configuration."""
    from proctree.config import Config

    cfg = Config.load()

    click.echo(f"Config file: {cfg.config_path}")
    click.echo(f"Exists: {cfg.config_path.exists()}")
    click.echo()
    click.echo("[polling]")
    click.echo(f"  interval = {cfg.polling.interval}")
    click.echo(f"  load_every = {cfg.polling.load_every}")
    click.echo(f"  listing_timeout = {cfg.polling.listing_timeout}")
    click.echo()
    click.echo("[tree]")
    click.echo(f"  keep_terminated = {str(cfg.tree.keep_terminated).lower()}")
    click.echo(f"  reveal_new = {str(cfg.tree.reveal_new).lower()}")
    click.echo()
    click.echo("[system]")
    click.echo(f"  log_max_bytes = {cfg.system.log_max_bytes}")
    click.echo(f"  log_backup_count = {cfg.system.log_backup_count}")


@config.command("reset")
@click.confirmation_option(prompt="Reset config to defaults?")
def config_reset() -> None:
    """Reset configuration to defaults."""
    from proctree import logging as console
    from proctree.config import Config

    cfg = Config()
    cfg.save()
    console.config_created(str(cfg.config_path))
