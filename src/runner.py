"""
Run steps: argument parsing, request planning and run-stream relay.
"""

import logging
from dataclasses import dataclass, field
from typing import IO, Iterable, List, Optional

from arguments import KIND_PSQL, build_psql_run_steps, has_connection_args, is_known_run_kind
from errors import ConflictingInstanceReference, MissingValue, RemoteError, UsageError
from models import RunRequest

logger = logging.getLogger(__name__)


@dataclass
class RunArgs:
    """Parsed ``run:<kind>`` arguments."""

    instance_ref: str = ""
    command: str = ""
    args: List[str] = field(default_factory=list)
    show_help: bool = False


def _split_command(parsed: RunArgs, rest: List[str]) -> RunArgs:
    if not rest:
        return parsed
    if rest[0].startswith("-"):
        parsed.args = list(rest)
        return parsed
    parsed.command = rest[0]
    parsed.args = list(rest[1:])
    return parsed


def parse_run_args(args: List[str]) -> RunArgs:
    """
    Parse ``[--instance ID] [--] [command] [args...]``.

    Everything after the first argument we do not own belongs to the tool.

    Raises:
        MissingValue: If ``--instance`` has no value
    """
    parsed = RunArgs()
    i = 0
    while i < len(args):
        arg = args[i]
        if arg == "--":
            return _split_command(parsed, args[i + 1 :])
        if arg in ("--help", "-h"):
            parsed.show_help = True
            return parsed
        if arg == "--instance":
            if i + 1 >= len(args) or not args[i + 1].strip():
                raise MissingValue("--instance")
            parsed.instance_ref = args[i + 1].strip()
            i += 2
            continue
        if arg.startswith("--instance="):
            value = arg[len("--instance=") :].strip()
            if not value:
                raise MissingValue("--instance")
            parsed.instance_ref = value
            i += 1
            continue
        return _split_command(parsed, args[i:])
    return parsed


def plan_run(
    kind: str,
    args: List[str],
    handoff: bool = False,
    workspace_root: Optional[str] = None,
    cwd: str = "",
    stdin: Optional[IO] = None,
) -> RunRequest:
    """
    Build the run request for one ``run:<kind>`` step without touching the engine.

    Args:
        kind: Run kind (psql, pgbench)
        args: Raw step arguments
        handoff: True when a preceding prepare step supplies the instance
        workspace_root: Explicit workspace root for script files
        cwd: Directory relative script paths resolve against
        stdin: Standard input stream for ``-f -``

    Raises:
        ConflictingInstanceReference: If both a handoff and --instance are present
        UsageError: For unknown kinds, missing instance or connection flags
    """
    parsed = parse_run_args(args)
    if parsed.show_help:
        raise UsageError(f"usage: sqlrs run:{kind} [--instance ID] [--] [command] [args...]")

    if parsed.instance_ref and handoff:
        raise ConflictingInstanceReference(parsed.instance_ref)
    instance_ref = parsed.instance_ref
    if not handoff and not instance_ref:
        raise UsageError("Missing instance (use --instance or run after prepare)")

    kind = (kind or "").strip().lower()
    if not is_known_run_kind(kind):
        raise UsageError(f"Unknown run kind: {kind}")
    if has_connection_args(kind, parsed.args):
        raise UsageError(f"Conflicting connection arguments for run:{kind}")

    request = RunRequest(
        instance_ref=instance_ref, kind=kind, command=parsed.command.strip() or None
    )
    if kind == KIND_PSQL:
        request.steps = build_psql_run_steps(parsed.args, workspace_root, cwd, stdin)
    else:
        request.args = list(parsed.args)
    return request


def relay_run_stream(events: Iterable[dict], stdout: IO, stderr: IO) -> int:
    """
    Copy run output to the local streams and return the remote exit code.

    Raises:
        RemoteError: If the engine reports a run error
    """
    exit_code = 0
    for event in events:
        kind = event.get("type")
        data = event.get("data") or ""
        if kind == "stdout":
            if data:
                stdout.write(data)
                stdout.flush()
        elif kind == "stderr":
            if data:
                stderr.write(data)
                stderr.flush()
        elif kind == "error":
            error = event.get("error") or {}
            message = error.get("message") or "run failed"
            if error.get("details"):
                message = f"{message}: {error['details']}"
            raise RemoteError(message)
        elif kind == "exit":
            if event.get("exit_code") is not None:
                exit_code = int(event["exit_code"])
            break
    return exit_code


def execute_run(api, request: RunRequest, stdout: IO, stderr: IO) -> int:
    """Start a run on the engine and relay its output."""
    logger.debug(f"Running {request.kind} on instance {request.instance_ref}")
    events = api.run_command(request)
    try:
        return relay_run_stream(events, stdout, stderr)
    finally:
        close = getattr(events, "close", None)
        if close is not None:
            close()
