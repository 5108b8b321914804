"""Console entry point for the sqlrs CLI."""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import IO, Callable, List, Mapping, Optional, Tuple

from arguments import build_path_converter
from clients import SqlrsRestClient
from config import ExecutionContext, resolve_endpoint
from errors import SqlrsError, UsageError
from log_utils import setup_logging
from pipeline import CompositePipelineExecutor, split_commands
from wsl import list_distros as wsl_list_distros
from wsl import resolve_distro

logger = logging.getLogger(__name__)

COMMANDS = ("watch", "rm", "ls", "status", "config")
COMMAND_PREFIXES = ("prepare:", "plan:", "run:")

EXIT_BLOCKED = 4


def build_parser() -> argparse.ArgumentParser:
    """Build and return the parser for global flags."""
    parser = argparse.ArgumentParser(
        prog="sqlrs",
        usage="sqlrs [global flags] <command> [args...]",
        description="Client for the sqlrs database provisioning engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Commands:\n"
            "  prepare:psql | prepare:lb [--image ID] [--no-watch] [--] <args>\n"
            "  plan:psql | plan:lb [--image ID] [--] <args>   show the tasks a prepare would run\n"
            "  run:psql | run:pgbench [--instance ID] [--] <args>\n"
            "  prepare:<kind> ... run:<kind> ...   prepare, run, then delete\n"
            "  watch <job-id>\n"
            "  rm <instance-id> [--force] [--dry-run]\n"
            "  ls [--image ID] [--id-prefix PREFIX]\n"
            "  status\n"
            "  config get [PATH] [--effective] | set PATH VALUE | rm PATH\n\n"
            "Examples:\n"
            "  sqlrs prepare:psql --image pg16 -- -f schema.sql\n"
            "  sqlrs prepare:psql --image pg16 -- -f schema.sql run:psql -- -c 'select 1'\n"
            "  sqlrs watch job-1"
        ),
    )

    engine = parser.add_argument_group("engine")
    engine.add_argument("--mode", choices=["local", "remote"], help="Engine mode")
    engine.add_argument("--endpoint", help="Engine URL, or 'auto' in local mode")
    engine.add_argument("--state-dir", help="Directory holding engine.json")
    engine.add_argument("--wsl-distro", help="WSL distro hosting the local engine")

    paths = parser.add_argument_group("paths")
    paths.add_argument("--workspace", help="Workspace root file arguments must stay in")

    timeouts = parser.add_argument_group("timeouts")
    timeouts.add_argument(
        "--timeout", default="30s", metavar="DURATION", help="Request timeout (default: 30s)"
    )
    timeouts.add_argument(
        "--startup-timeout",
        default="5s",
        metavar="DURATION",
        help="Connect timeout (default: 5s)",
    )
    timeouts.add_argument(
        "--watch-timeout",
        default="2h",
        metavar="DURATION",
        help="Stop watching a prepare job after this long; 0 waits forever (default: 2h)",
    )
    timeouts.add_argument(
        "--poll-interval",
        default="1s",
        metavar="DURATION",
        help="Delay between prepare status polls (default: 1s)",
    )

    output = parser.add_argument_group("logging and output")
    output.add_argument("--output", choices=["human", "json"], default="human")
    output.add_argument("--log-file", help="Also write diagnostics to this file")
    output.add_argument("-v", "--verbose", action="store_true")
    return parser


def split_argv(argv: List[str]) -> Tuple[List[str], List[str]]:
    """Separate global flags from the command and its arguments."""
    for i, arg in enumerate(argv):
        if arg in COMMANDS or arg.startswith(COMMAND_PREFIXES):
            return list(argv[:i]), list(argv[i:])
    return list(argv), []


def default_client_factory(ctx: ExecutionContext) -> SqlrsRestClient:
    endpoint, token = resolve_endpoint(ctx)
    return SqlrsRestClient(endpoint, auth_token=token, timeout_s=ctx.request_timeout)


def _write(stream: IO, line: str) -> None:
    stream.write(line + "\n")
    stream.flush()


def _run_rm(api, ctx: ExecutionContext, args: List[str], stdout: IO) -> int:
    parser = argparse.ArgumentParser(prog="sqlrs rm")
    parser.add_argument("instance_id")
    parser.add_argument("--force", action="store_true")
    parser.add_argument("--dry-run", action="store_true")
    opts = parser.parse_args(args)

    result, status = api().delete_instance(opts.instance_id, force=opts.force, dry_run=opts.dry_run)
    blocked = status == 409 or result.is_blocked
    if ctx.output == "json":
        _write(stdout, json.dumps({"outcome": result.outcome, "dry_run": result.dry_run}))
    else:
        _print_delete_node(stdout, result.root, result.outcome, 0)
    return EXIT_BLOCKED if blocked else 0


def _print_delete_node(stdout: IO, node, outcome: str, depth: int) -> None:
    details = []
    if node.blocked:
        details.append(f"blocked={node.blocked}")
    if node.connections is not None:
        details.append(f"connections={node.connections}")
    suffix = f" ({', '.join(details)})" if details else ""
    label = outcome if depth == 0 else ""
    _write(stdout, f"{'  ' * depth}{node.kind} {node.id} {label}".rstrip() + suffix)
    for child in node.children:
        _print_delete_node(stdout, child, outcome, depth + 1)


def _run_ls(api, ctx: ExecutionContext, args: List[str], stdout: IO) -> int:
    parser = argparse.ArgumentParser(prog="sqlrs ls")
    parser.add_argument("--image")
    parser.add_argument("--id-prefix")
    opts = parser.parse_args(args)

    instances = api().list_instances(id_prefix=opts.id_prefix, image=opts.image)
    if ctx.output == "json":
        _write(stdout, json.dumps([vars(i) for i in instances]))
        return 0
    _write(stdout, "INSTANCE_ID\tIMAGE_ID\tSTATE_ID\tSTATUS\tCREATED")
    for inst in instances:
        _write(
            stdout,
            f"{inst.instance_id}\t{inst.image_id}\t{inst.state_id}\t{inst.status}\t{inst.created_at}",
        )
    return 0


def _run_status(api, ctx: ExecutionContext, args: List[str], stdout: IO) -> int:
    if args:
        raise UsageError("status does not accept arguments")
    health = api().health()
    if ctx.output == "json":
        _write(stdout, json.dumps(vars(health)))
    else:
        _write(stdout, f"ok={str(health.ok).lower()}")
        _write(stdout, f"version={health.version}")
        _write(stdout, f"instanceId={health.instance_id}")
        _write(stdout, f"pid={health.pid}")
    return 0 if health.ok else 1


def _parse_config_value(raw: str):
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def _run_config(api, ctx: ExecutionContext, args: List[str], stdout: IO) -> int:
    parser = argparse.ArgumentParser(prog="sqlrs config")
    actions = parser.add_subparsers(dest="action", required=True)
    get = actions.add_parser("get")
    get.add_argument("path", nargs="?")
    get.add_argument("--effective", action="store_true")
    set_ = actions.add_parser("set")
    set_.add_argument("path")
    set_.add_argument("value")
    rm = actions.add_parser("rm")
    rm.add_argument("path")
    opts = parser.parse_args(args)

    if opts.action == "get":
        data = api().get_config(opts.path, effective=opts.effective)
    elif opts.action == "set":
        data = api().set_config(opts.path, _parse_config_value(opts.value))
    else:
        data = api().remove_config(opts.path)
    _write(stdout, json.dumps(data, indent=None if ctx.output == "json" else 2))
    return 0


def main(
    argv: Optional[List[str]] = None,
    stdin: Optional[IO] = None,
    stdout: Optional[IO] = None,
    stderr: Optional[IO] = None,
    client_factory: Callable[[ExecutionContext], object] = default_client_factory,
    list_distros: Callable = wsl_list_distros,
    getcwd: Callable[[], str] = os.getcwd,
    environ: Optional[Mapping[str, str]] = None,
    platform: str = sys.platform,
) -> int:
    """CLI main for console_scripts entry point."""
    argv = sys.argv[1:] if argv is None else argv
    stdin = sys.stdin if stdin is None else stdin
    stdout = sys.stdout if stdout is None else stdout
    stderr = sys.stderr if stderr is None else stderr
    environ = os.environ if environ is None else environ

    global_argv, command = split_argv(argv)
    args = build_parser().parse_args(global_argv)
    setup_logging(verbose=args.verbose, log_file=args.log_file, stream=stderr)

    try:
        ctx = ExecutionContext.from_args(args, environ)
        if not command:
            raise UsageError("missing command (see sqlrs --help)")

        convert = None
        if ctx.mode == "local":
            distro = resolve_distro(ctx.wsl_distro, lister=list_distros, platform=platform)
            convert = build_path_converter(distro, platform=platform)

        executor = CompositePipelineExecutor(
            ctx,
            client_factory,
            stdin=stdin,
            stdout=stdout,
            stderr=stderr,
            getcwd=getcwd,
            environ=environ,
            convert=convert,
        )
        name, rest = command[0], command[1:]
        if name.startswith(COMMAND_PREFIXES):
            return executor.execute(split_commands(command))
        if name == "watch":
            if len(rest) != 1:
                raise UsageError("usage: sqlrs watch <job-id>")
            return executor.watch(rest[0])

        handlers = {
            "rm": _run_rm,
            "ls": _run_ls,
            "status": _run_status,
            "config": _run_config,
        }
        return handlers[name](executor.api, ctx, rest, stdout)
    except SqlrsError as e:
        logger.debug(f"Command failed: {e!r}")
        _write(stderr, f"Error: {e}")
        return e.exit_code


def main_entry() -> None:
    sys.exit(main())
