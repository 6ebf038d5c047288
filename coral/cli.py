"""
CLI interface for coral.

Launches Coral instances from a compose file, tails their logs, and shuts
them down again. Instances are tracked as records in the coral home
directory (see `coral init`).
"""

import sys
from pathlib import Path

import click
from rich.table import Table

from coral import __version__
from coral.compose.profiles import PHASE_ORDER
from coral.errors import CoralError


def _get_config(ctx):
    """Return the loaded config, or exit if config.yaml was invalid."""
    if "config" not in ctx.obj:
        click.echo(f"✗ Config not loaded: {ctx.obj.get('config_error', 'Unknown error')}", err=True)
        click.echo("Fix the file or run 'coral init --force' to recreate it.", err=True)
        raise SystemExit(1)
    return ctx.obj["config"]


def _fail(message: str) -> None:
    from coral.utils import print_error

    print_error(message)
    raise SystemExit(1)


@click.group()
@click.version_option(version=__version__, prog_name="coral")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx, verbose: bool):
    """
    coral - Lifecycle manager for Coral instances.

    Merge a compose file with the interfaces of its images, launch it
    profile by profile, follow its logs, and tear it down.
    """
    from coral.config import load_config
    from coral.errors import ConfigError
    from coral.utils import setup_logging

    ctx.ensure_object(dict)
    try:
        config = load_config()
    except ConfigError as e:
        # init must still work with a broken config file
        ctx.obj["config_error"] = str(e)
        setup_logging("DEBUG" if verbose else "INFO")
        return

    ctx.obj["config"] = config
    setup_logging(
        "DEBUG" if verbose else config.log_level,
        log_file=Path(config.log_file).expanduser() if config.log_file else None,
    )


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize coral configuration."""
    import yaml

    from coral.config import CoralConfig, get_coral_home

    home = get_coral_home()
    if not home.exists():
        home.mkdir(parents=True)

    cfg_path = home / "config.yaml"
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(1)

    cfg_path.write_text(yaml.safe_dump(CoralConfig().to_dict(), sort_keys=False))
    (home / "instances").mkdir(exist_ok=True)

    click.echo(f"Initialized coral config at {cfg_path}")


@main.command("launch")
@click.option("-f", "--compose-file", type=click.Path(dir_okay=False), help="Compose file (default: ./compose.yaml and friends)")
@click.option("--env-file", type=click.Path(dir_okay=False), help="Environment file (default: ./.env if present)")
@click.option("--handle", help="Name to refer to this instance by")
@click.option("--group", help="Group label (default: from config, 'coral')")
@click.option("-d", "--detached", is_flag=True, help="Return after starting instead of following logs")
@click.option("--kill/--no-kill", default=True, help="Kill containers before removing them on teardown")
@click.option("--executor-delay", type=click.FloatRange(min=0), help="Seconds to wait before starting executors")
@click.option(
    "-p", "--profile", "profiles",
    multiple=True,
    type=click.Choice(PHASE_ORDER),
    help="Only launch these profiles (repeatable; default: all)",
)
@click.pass_context
def launch(ctx, compose_file, env_file, handle, group, detached, kill, executor_delay, profiles):
    """Launch an instance from a compose file."""
    from coral.orchestrator import LaunchOptions, Orchestrator

    config = _get_config(ctx)
    options = LaunchOptions(
        compose_file=compose_file,
        env_file=env_file,
        handle=handle,
        group=group or config.group,
        detached=detached,
        kill=kill,
        executor_delay=config.executor_delay if executor_delay is None else executor_delay,
        profiles=list(profiles),
    )

    try:
        result = Orchestrator(config=config).launch(options)
    except CoralError as e:
        _fail(str(e))

    if result.reason == "detached":
        click.echo(result.record.name)


@main.command("shutdown")
@click.option("--name", "names", multiple=True, help="Instance name (repeatable)")
@click.option("--handle", "handles", multiple=True, help="Instance handle (repeatable)")
@click.option("--group", "groups", multiple=True, help="Every instance in a group (repeatable)")
@click.option("-f", "--compose-file", "compose_files", multiple=True, help="Merged compose file of an instance")
@click.option("--all", "all_instances", is_flag=True, help="Every instance")
@click.option("--kill", is_flag=True, help="Kill containers before removing them")
@click.pass_context
def shutdown(ctx, names, handles, groups, compose_files, all_instances, kill):
    """Stop instances and remove their files."""
    from coral.orchestrator import Orchestrator
    from coral.utils import print_info, print_success

    if not (names or handles or groups or compose_files or all_instances):
        raise click.UsageError("give --name, --handle, --group, --compose-file, or --all")

    orchestrator = Orchestrator(config=_get_config(ctx))
    try:
        records = orchestrator.select_instances(
            names=names,
            handles=handles,
            groups=groups,
            compose_files=compose_files,
            all_instances=all_instances,
        )
    except CoralError as e:
        _fail(str(e))

    if not records:
        print_info("No instances found.")
        return

    failed = orchestrator.shutdown(records, kill=kill)
    if failed:
        _fail(f"{len(failed)} instance(s) failed to shut down: {', '.join(failed)}")
    print_success(f"Shut down {len(records)} instance(s)")


@main.command("tail")
@click.option("--all", "all_instances", is_flag=True, help="Every instance")
@click.option("--name", "names", multiple=True, help="Instance name (repeatable)")
@click.option("--handle", "handles", multiple=True, help="Instance handle (repeatable)")
@click.option("--group", "groups", multiple=True, help="Every instance in a group (repeatable)")
@click.option("--history", is_flag=True, help="Show existing log lines, not only new ones")
@click.pass_context
def tail(ctx, all_instances, names, handles, groups, history):
    """Follow the logs of running instances (Ctrl-C detaches)."""
    from coral.orchestrator import Orchestrator
    from coral.utils import print_info

    if not (names or handles or groups or all_instances):
        raise click.UsageError("give --name, --handle, --group, or --all")

    orchestrator = Orchestrator(config=_get_config(ctx))
    try:
        records = orchestrator.select_instances(
            names=names, handles=handles, groups=groups, all_instances=all_instances
        )
        if not records:
            print_info("No instances found.")
            return
        orchestrator.tail(records, history=history)
    except CoralError as e:
        _fail(str(e))


@main.command("list")
def list_instances():
    """List persisted instances."""
    from coral.instance_store import InstanceStore
    from coral.utils import console

    records = InstanceStore().read_all()
    if not records:
        click.echo("No instances found.")
        return

    table = Table(title="Coral instances")
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("Handle")
    table.add_column("Group")
    table.add_column("Created")
    table.add_column("Detached")
    for record in records:
        table.add_row(
            record.name,
            record.handle or "-",
            record.group or "-",
            record.created_at.isoformat(timespec="seconds"),
            "yes" if record.detached else "no",
        )
    console.print(table)


def _docker_listing(subcommand: str, column: str, args) -> None:
    from coral.tools.docker import DockerClient, filter_listing

    try:
        result = DockerClient().run([subcommand, *args], capture=True)
    except CoralError as e:
        _fail(str(e))

    for line in filter_listing(result.stdout, column):
        click.echo(line)


@main.command("ps", context_settings={"ignore_unknown_options": True, "allow_extra_args": True})
@click.argument("docker_args", nargs=-1, type=click.UNPROCESSED)
def ps(docker_args):
    """`docker ps`, restricted to coral containers."""
    _docker_listing("ps", "IMAGE", docker_args)


@main.command("images", context_settings={"ignore_unknown_options": True, "allow_extra_args": True})
@click.argument("docker_args", nargs=-1, type=click.UNPROCESSED)
def images(docker_args):
    """`docker images`, restricted to coral images."""
    _docker_listing("images", "REPOSITORY", docker_args)


@main.command("verify")
@click.argument("image")
@click.option("--env-file", type=click.Path(dir_okay=False), help="Environment file (default: ./.env if present)")
@click.pass_context
def verify(ctx, image: str, env_file):
    """Check that IMAGE follows the Coral image conventions."""
    from coral.config import load_env, resolve_env_file, resolve_runtime_settings
    from coral.tools.docker import DockerClient
    from coral.utils import print_error, print_success, remove_dir_if_empty
    from coral.verify import verify_image

    config = _get_config(ctx)
    default_lib = Path("./lib").resolve()
    lib_existed = default_lib.exists()

    try:
        settings = resolve_runtime_settings(load_env(resolve_env_file(env_file)), config.lib_path)
        results = verify_image(DockerClient(), image, settings)
    except CoralError as e:
        _fail(str(e))
    finally:
        if not lib_existed:
            remove_dir_if_empty(default_lib)

    for result in results:
        if result.passed:
            print_success(result.name)
        else:
            print_error(f"{result.name}: {result.detail}")

    if not all(r.passed for r in results):
        sys.exit(1)
