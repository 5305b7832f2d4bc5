# tandem/modules/cli.py
"""
Command line entry point.

    tandem sync yay extra/ripgrep --needed
    tandem sync --srcinfo ./my-pkg --asdeps
    tandem upgrade --devel --exclude linux
    tandem graph yay --format yaml
    tandem devel-clean

Every command builds one TandemConfig from the config file plus the command
line switches, wires the components with it and renders the plan with rich.
Errors are printed through the logger; the exit status is the package
manager's when it caused the failure, else 1.
"""

import contextlib
import os
from dataclasses import dataclass
from typing import List, Optional

import typer
import yaml
from rich.console import Console
from rich.prompt import Confirm, IntPrompt
from rich.table import Table

from tandem.modules import logger as _logger
from tandem.modules.aur import AURClient
from tandem.modules.config import RebuildMode, TandemConfig, TargetMode
from tandem.modules.errors import TandemError, exit_code_for
from tandem.modules.executor import CmdBuilder, Runner
from tandem.modules.localdb import PacmanDB
from tandem.modules.operation import SyncOperation
from tandem.modules.package import Package, Source
from tandem.modules.planner import InstallPlan
from tandem.modules.vcs import VCSStore

app = typer.Typer(help="AUR and repository package helper", no_args_is_help=True)

_SOURCE_STYLES = {
    Source.REPO: "cyan",
    Source.AUR: "green",
    Source.SRCINFO: "yellow",
    Source.LOCAL: "bright_black",
    Source.MISSING: "red",
}


@dataclass
class State:
    config: TandemConfig
    log: _logger.Logger
    console: Console


# ---------------------------------------------------
# wiring
# ---------------------------------------------------
@contextlib.contextmanager
def handle_errors(log: _logger.Logger):
    try:
        yield
    except TandemError as e:
        log.error(str(e))
        raise typer.Exit(code=exit_code_for(e))


def make_console(no_color: bool) -> Console:
    if no_color:
        return Console(color_system=None, highlight=False)
    return Console(highlight=False)


def build_operation(state: State, dry_run: bool = False) -> SyncOperation:
    config, log = state.config, state.log
    cmd = CmdBuilder(config, Runner(log.child("exec"), dry_run=dry_run), log.child("exec"))
    db = PacmanDB(config, cmd, log.child("db"))
    aur = AURClient(config, log.child("aur"))
    vcs = VCSStore(config.vcs_file, log.child("vcs")).load()
    selector = None if config.no_confirm else prompt_provider(state.console)
    confirm = None if config.no_confirm else confirm_plan(state.console)
    return SyncOperation(config, db, aur, cmd, vcs, log=log, provider_selector=selector, confirm=confirm)


def prompt_provider(console: Console):
    def select(dep: str, candidates: List[Package]) -> Optional[Package]:
        console.print(f"[bold]There are {len(candidates)} providers available for {dep}:[/bold]")
        for i, pkg in enumerate(candidates, 1):
            console.print(f"  {i}) {pkg.name} {pkg.version}", markup=False)
        choice = IntPrompt.ask("Enter a number", default=1, console=console)
        if 1 <= choice <= len(candidates):
            return candidates[choice - 1]
        return None

    return select


def confirm_plan(console: Console):
    def confirm(plan: InstallPlan) -> bool:
        render_plan(console, plan)
        return Confirm.ask("Proceed with installation?", default=True, console=console)

    return confirm


# ---------------------------------------------------
# rendering
# ---------------------------------------------------
def plan_table(plan: InstallPlan) -> Table:
    table = Table(title=f"{len(plan)} packages in {len(plan.layers)} layers")
    table.add_column("Source")
    table.add_column("Reason")
    table.add_column("Packages")
    for source, by_reason in sorted(plan.summary().items(), key=lambda kv: kv[0].value):
        for reason, entries in sorted(by_reason.items()):
            names = ", ".join(f"{n}-{v}" if v else n for n, v in entries)
            table.add_row(f"[{_SOURCE_STYLES[source]}]{source.value}[/]", reason.label, names)
    return table


def render_plan(console: Console, plan: InstallPlan):
    console.print(plan_table(plan))


# ---------------------------------------------------
# commands
# ---------------------------------------------------
@app.callback()
def main_callback(
    ctx: typer.Context,
    config_file: Optional[str] = typer.Option(None, "--config", "-c", help="Configuration file"),
    debug: bool = typer.Option(False, "--debug", help="Verbose logging"),
    no_color: bool = typer.Option(False, "--no-color", help="Disable colored output"),
    no_confirm: bool = typer.Option(False, "--noconfirm", help="Never ask for confirmation"),
    mode: Optional[TargetMode] = typer.Option(None, "--mode", help="Where to look for targets"),
    rebuild: Optional[RebuildMode] = typer.Option(None, "--rebuild", help="Rebuild already built packages"),
):
    console = make_console(no_color)
    config = TandemConfig(locations=[os.path.expanduser(config_file)] if config_file else None)
    log = _logger.Logger("tandem", config, console=Console(stderr=True, no_color=no_color, highlight=False))
    if debug:
        log.set_level("debug")
    if no_confirm:
        config.no_confirm = True
    if mode is not None:
        config.mode = mode
    if rebuild is not None:
        config.rebuild = rebuild
    log.debug(f"configuration loaded from {config.loaded_from or 'defaults'}")
    ctx.obj = State(config=config, log=log, console=console)


@app.command()
def sync(
    ctx: typer.Context,
    targets: Optional[List[str]] = typer.Argument(None, help="Packages to install ([db/]name[<op>version])"),
    srcinfo: Optional[List[str]] = typer.Option(None, "--srcinfo", help="Local directory holding a .SRCINFO"),
    as_deps: bool = typer.Option(False, "--asdeps", help="Install as dependencies"),
    as_explicit: bool = typer.Option(False, "--asexplicit", help="Install as explicitly installed"),
    needed: bool = typer.Option(False, "--needed", help="Do not reinstall up to date packages"),
    download_only: bool = typer.Option(False, "--downloadonly", help="Fetch and prepare, do not install"),
    no_deps: bool = typer.Option(False, "--nodeps", help="Skip runtime dependency checks"),
    no_check_deps: bool = typer.Option(False, "--nocheckdeps", help="Ignore check dependencies"),
    print_only: bool = typer.Option(False, "--print", help="Show the plan and exit"),
):
    """Install packages from the repositories and the AUR."""
    state: State = ctx.obj
    config = state.config
    config.as_deps, config.as_explicit = as_deps, as_explicit
    config.needed, config.download_only = needed, download_only
    config.no_deps, config.no_check_deps = no_deps, no_check_deps
    targets = list(targets or [])
    srcinfo = list(srcinfo or [])
    if not targets and not srcinfo:
        raise typer.BadParameter("no targets specified")
    if as_deps and as_explicit:
        raise typer.BadParameter("--asdeps and --asexplicit are mutually exclusive")

    with handle_errors(state.log):
        op = build_operation(state, dry_run=print_only)
        if print_only:
            show_plan(state, op.prepare(targets, srcinfo_dirs=srcinfo))
            return
        op.run(targets, srcinfo_dirs=srcinfo)


@app.command()
def upgrade(
    ctx: typer.Context,
    targets: Optional[List[str]] = typer.Argument(None, help="Extra packages to install"),
    exclude: Optional[List[str]] = typer.Option(None, "--exclude", "-e", help="Do not upgrade this package"),
    devel: bool = typer.Option(False, "--devel", help="Check development packages for new commits"),
    time_update: bool = typer.Option(False, "--timeupdate", help="Compare AUR modification time too"),
    needed: bool = typer.Option(True, "--needed/--no-needed", help="Do not reinstall up to date packages"),
    print_only: bool = typer.Option(False, "--print", help="Show the plan and exit"),
):
    """Upgrade repository, AUR and (with --devel) development packages."""
    state: State = ctx.obj
    config = state.config
    config.devel = config.devel or devel
    config.time_update = config.time_update or time_update
    config.needed = needed
    targets = list(targets or [])
    exclude = list(exclude or [])

    with handle_errors(state.log):
        op = build_operation(state, dry_run=print_only)
        if print_only:
            show_plan(state, op.prepare(targets, upgrade=True, exclude=exclude))
            return
        op.run(targets, upgrade=True, exclude=exclude)


@app.command()
def graph(
    ctx: typer.Context,
    targets: Optional[List[str]] = typer.Argument(None, help="Packages to resolve"),
    fmt: str = typer.Option("dot", "--format", "-f", help="dot or yaml"),
    upgrade_all: bool = typer.Option(False, "--upgrade", "-u", help="Include pending upgrades"),
    full: bool = typer.Option(False, "--full", help="Keep installed and repo dependencies in the graph"),
):
    """Print the resolved dependency graph."""
    state: State = ctx.obj
    if fmt not in ("dot", "yaml"):
        raise typer.BadParameter("format must be dot or yaml")
    state.config.full_graph = full

    with handle_errors(state.log):
        op = build_operation(state, dry_run=True)
        dep_graph = op.resolve(targets or [], upgrade=upgrade_all)
        if fmt == "yaml":
            typer.echo(yaml.safe_dump(dep_graph.to_dict(), sort_keys=False, allow_unicode=True), nl=False)
        else:
            typer.echo(dep_graph.to_dot())


@app.command("devel-clean")
def devel_clean(ctx: typer.Context):
    """Forget fingerprints of development packages that are not installed anymore."""
    state: State = ctx.obj
    config, log = state.config, state.log
    with handle_errors(log):
        cmd = CmdBuilder(config, Runner(log.child("exec")), log.child("exec"))
        db = PacmanDB(config, cmd, log.child("db"))
        vcs = VCSStore(config.vcs_file, log.child("vcs")).load()
        removed = vcs.clean_orphans(db.foreign_packages())
        if removed:
            log.success(f"removed {len(removed)} entries: {', '.join(removed)}")
        else:
            log.info("nothing to clean")


def show_plan(state: State, plan: Optional[InstallPlan]):
    if plan is None:
        state.log.success("there is nothing to do")
        return
    render_plan(state.console, plan)
    for i, layer in enumerate(plan.layers):
        state.console.print(f"layer {i}: {' '.join(sorted(layer))}", markup=False)


def main():
    app(prog_name="tandem")


if __name__ == "__main__":
    main()
