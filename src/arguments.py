"""
Argument normalization for the tools the engine runs on our behalf.

psql and Liquibase receive file references that only make sense on the
machine that typed them. Before an argument vector is shipped to the engine
every file reference is resolved against the caller's working directory,
checked against the workspace root and, when the engine lives in another
filesystem namespace (WSL), converted to the guest path. Flags we do not
recognize are passed through untouched; the wrapped tool owns its grammar.
"""

import logging
import os
import sys
from dataclasses import dataclass
from typing import Callable, Dict, IO, List, Mapping, Optional, Tuple

from errors import (
    InvalidPath,
    InvalidSearchPath,
    MissingValue,
    StdinReadError,
    UsageError,
)
from models import RunStep
from paths import contain_within_root, require_within_root, translate_host_path

logger = logging.getLogger(__name__)

Converter = Callable[[str], str]

KIND_PSQL = "psql"
KIND_PGBENCH = "pgbench"
RUN_KINDS = (KIND_PSQL, KIND_PGBENCH)

PREPARE_KIND_PSQL = "psql"
PREPARE_KIND_LIQUIBASE = "lb"
PREPARE_KINDS = (PREPARE_KIND_PSQL, PREPARE_KIND_LIQUIBASE)

# Liquibase path flags and the spelling sent to the engine
_LIQUIBASE_PATH_FLAGS = {
    "--changelog-file": "--changelog-file",
    "--defaults-file": "--defaults-file",
    "--searchPath": "--searchPath",
    "--search-path": "--searchPath",
}
_SEARCH_PATH_FLAG = "--searchPath"


@dataclass
class NormalizedArgs:
    """Argument vector ready for the engine plus captured standard input."""

    args: List[str]
    stdin: Optional[str] = None


def workspace_boundary(
    mode: str, workspace_root: Optional[str], cwd: str
) -> Optional[str]:
    """
    Pick the directory file arguments must stay inside.

    An explicit workspace always applies. Without one, remote execution is
    confined to the working directory while local execution is unconfined.
    """
    if workspace_root and workspace_root.strip():
        return workspace_root.strip()
    if mode == "local":
        return None
    return cwd


def build_path_converter(
    wsl_distro: Optional[str], platform: str = sys.platform
) -> Optional[Converter]:
    """Return the host-to-guest converter when the engine runs inside WSL."""
    if not wsl_distro or platform != "win32":
        return None
    return translate_host_path


def read_stdin(stdin: Optional[IO]) -> str:
    """
    Read all of standard input.

    Raises:
        StdinReadError: If stdin is unavailable or cannot be read
    """
    if stdin is None:
        raise StdinReadError("standard input is not available")
    try:
        data = stdin.read()
        if isinstance(data, bytes):
            data = data.decode("utf-8")
    except (OSError, ValueError) as e:
        raise StdinReadError(f"failed to read standard input: {e}") from e
    return data


def resolve_file_path(
    value: str,
    workspace_root: Optional[str],
    cwd: str,
    convert: Optional[Converter] = None,
) -> str:
    """
    Resolve a file argument for the execution environment.

    Args:
        value: Path as typed by the user
        workspace_root: Boundary the path must stay inside, or None
        cwd: Directory relative paths are resolved against
        convert: Optional host-to-guest path conversion

    Returns:
        Absolute (possibly converted) path

    Raises:
        InvalidPath: If the value is blank
        PathOutsideWorkspace: If the path escapes the workspace root
    """
    if not value or not value.strip():
        raise InvalidPath("File path is empty")

    path = value if os.path.isabs(value) else os.path.join(cwd, value)
    path = os.path.normpath(path)

    if workspace_root:
        root = os.path.normpath(workspace_root)
        # compare real locations so a symlinked workspace is not rejected
        if os.path.exists(root) and os.path.exists(path):
            root = os.path.realpath(root)
            path = os.path.realpath(path)
        require_within_root(root, path)

    if convert is not None:
        return convert(path)
    return path


def _psql_file_value(
    flag: str,
    value: str,
    workspace_root: Optional[str],
    cwd: str,
    convert: Optional[Converter],
) -> Tuple[str, bool]:
    if value == "-":
        return value, True
    if not value.strip():
        raise MissingValue(flag)
    return resolve_file_path(value, workspace_root, cwd, convert), False


def normalize_psql_args(
    args: List[str],
    workspace_root: Optional[str],
    cwd: str,
    stdin: Optional[IO] = None,
    convert: Optional[Converter] = None,
) -> NormalizedArgs:
    """
    Rewrite psql script arguments (``-f``, ``-f<v>``, ``--file``, ``--file=<v>``).

    ``-`` is kept as is and standard input is captured eagerly so the caller
    can relay it to the engine.
    """
    normalized: List[str] = []
    uses_stdin = False

    i = 0
    while i < len(args):
        arg = args[i]
        if arg in ("-f", "--file"):
            if i + 1 >= len(args):
                raise MissingValue(arg)
            path, is_stdin = _psql_file_value(
                arg, args[i + 1], workspace_root, cwd, convert
            )
            uses_stdin = uses_stdin or is_stdin
            normalized.extend([arg, path])
            i += 2
            continue
        if arg.startswith("--file="):
            path, is_stdin = _psql_file_value(
                "--file", arg[len("--file=") :], workspace_root, cwd, convert
            )
            uses_stdin = uses_stdin or is_stdin
            normalized.append("--file=" + path)
        elif arg.startswith("-f") and len(arg) > 2:
            path, is_stdin = _psql_file_value(
                "-f", arg[2:], workspace_root, cwd, convert
            )
            uses_stdin = uses_stdin or is_stdin
            normalized.append("-f" + path)
        else:
            normalized.append(arg)
        i += 1

    if not uses_stdin:
        return NormalizedArgs(args=normalized)
    return NormalizedArgs(args=normalized, stdin=read_stdin(stdin))


def is_remote_ref(value: str) -> bool:
    """True for references Liquibase resolves itself (classpath, URLs)."""
    lower = value.strip().lower()
    return lower.startswith("classpath:") or "://" in lower


def normalize_search_path(
    value: str,
    workspace_root: Optional[str],
    cwd: str,
    convert: Optional[Converter] = None,
) -> str:
    """Resolve each filesystem element of a comma-separated search path."""
    if not value or not value.strip():
        raise InvalidSearchPath("searchPath is empty")
    out = []
    for part in value.split(","):
        item = part.strip()
        if not item:
            raise InvalidSearchPath(f"searchPath has an empty element: {value}")
        if is_remote_ref(item):
            out.append(item)
            continue
        out.append(resolve_file_path(item, workspace_root, cwd, convert))
    return ",".join(out)


def _rewrite_liquibase_value(
    flag: str,
    value: str,
    workspace_root: Optional[str],
    cwd: str,
    convert: Optional[Converter],
) -> str:
    if flag == _SEARCH_PATH_FLAG:
        return normalize_search_path(value, workspace_root, cwd, convert)
    if not value.strip():
        raise MissingValue(flag)
    if is_remote_ref(value):
        return value
    return resolve_file_path(value, workspace_root, cwd, convert)


def normalize_liquibase_args(
    args: List[str],
    workspace_root: Optional[str],
    cwd: str,
    convert: Optional[Converter] = None,
) -> List[str]:
    """
    Rewrite Liquibase path flags in both ``flag value`` and ``flag=value`` form.

    ``--search-path`` is respelled ``--searchPath``.
    """
    normalized: List[str] = []

    i = 0
    while i < len(args):
        arg = args[i]
        if arg in _LIQUIBASE_PATH_FLAGS:
            if i + 1 >= len(args):
                raise MissingValue(arg)
            flag = _LIQUIBASE_PATH_FLAGS[arg]
            rewritten = _rewrite_liquibase_value(
                flag, args[i + 1], workspace_root, cwd, convert
            )
            normalized.extend([flag, rewritten])
            i += 2
            continue

        name, sep, value = arg.partition("=")
        if sep and name in _LIQUIBASE_PATH_FLAGS:
            if not value.strip():
                raise MissingValue(name)
            flag = _LIQUIBASE_PATH_FLAGS[name]
            rewritten = _rewrite_liquibase_value(
                flag, value, workspace_root, cwd, convert
            )
            normalized.append(f"{flag}={rewritten}")
        else:
            normalized.append(arg)
        i += 1

    return normalized


def _relativize_value(flag: str, value: str, base: str) -> str:
    if flag == _SEARCH_PATH_FLAG:
        return ",".join(
            item if is_remote_ref(item) else contain_within_root(base, item)
            for item in value.split(",")
        )
    if is_remote_ref(value):
        return value
    return contain_within_root(base, value)


def relativize_liquibase_args(
    args: List[str], workspace_root: Optional[str], cwd: str
) -> List[str]:
    """
    Turn resolved absolute paths under the workspace back into relative ones.

    Used when Liquibase runs somewhere that does not share our absolute path
    layout. Paths outside the workspace stay absolute.
    """
    base = (workspace_root or "").strip() or (cwd or "").strip()
    if not base:
        return list(args)

    normalized: List[str] = []
    i = 0
    while i < len(args):
        arg = args[i]
        if arg in _LIQUIBASE_PATH_FLAGS:
            flag = _LIQUIBASE_PATH_FLAGS[arg]
            if i + 1 >= len(args):
                normalized.append(arg)
                i += 1
                continue
            normalized.extend([arg, _relativize_value(flag, args[i + 1], base)])
            i += 2
            continue

        name, sep, value = arg.partition("=")
        if sep and name in _LIQUIBASE_PATH_FLAGS:
            flag = _LIQUIBASE_PATH_FLAGS[name]
            normalized.append(f"{name}={_relativize_value(flag, value, base)}")
        else:
            normalized.append(arg)
        i += 1
    return normalized


def normalize_work_dir(cwd: str, convert: Optional[Converter] = None) -> str:
    """Express the working directory for the execution environment."""
    if not cwd or not cwd.strip():
        return ""
    if convert is not None:
        return convert(cwd)
    return cwd


def sanitize_liquibase_exec(value: Optional[str]) -> str:
    """Strip whitespace and one level of surrounding quotes."""
    value = (value or "").strip()
    if not value:
        return ""
    value = value.replace('\\"', '"')
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        value = value[1:-1]
    return value.strip()


def use_windows_exec_mode(exec_path: Optional[str], exec_mode: Optional[str]) -> bool:
    """True when Liquibase is launched through a Windows batch wrapper."""
    mode = (exec_mode or "").strip().lower()
    if mode == "windows-bat":
        return True
    if mode == "native":
        return False
    path = (exec_path or "").strip().lower()
    return path.endswith(".bat") or path.endswith(".cmd")


def liquibase_env(environ: Mapping[str, str]) -> Optional[Dict[str, str]]:
    """Environment forwarded to Liquibase (currently JAVA_HOME only)."""
    java_home = environ.get("JAVA_HOME", "").strip().strip('"').rstrip("\\/")
    if not java_home:
        return None
    return {"JAVA_HOME": java_home}


def is_known_run_kind(kind: str) -> bool:
    return (kind or "").strip().lower() in RUN_KINDS


_PSQL_CONN_FLAGS = (
    "-h",
    "-p",
    "-U",
    "-d",
    "--host",
    "--port",
    "--username",
    "--dbname",
    "--database",
)
_PGBENCH_CONN_FLAGS = ("-h", "-p", "-U", "-d")


def _is_short_conn_flag(arg: str) -> bool:
    return len(arg) > 2 and arg[:2] in ("-h", "-p", "-U", "-d")


def has_connection_args(kind: str, args: List[str]) -> bool:
    """
    Detect user-supplied connection settings.

    The engine injects the connection for the instance, so host, port, user
    and database flags (and connection URIs for psql) are rejected.
    """
    kind = (kind or "").strip().lower()
    if kind == KIND_PSQL:
        for raw in args:
            arg = raw.strip()
            if not arg:
                continue
            if arg in _PSQL_CONN_FLAGS or _is_short_conn_flag(arg):
                return True
            if arg.split("=", 1)[0] in _PSQL_CONN_FLAGS[4:]:
                return True
            if not arg.startswith("-") and "://" in arg:
                return True
        return False
    if kind == KIND_PGBENCH:
        for raw in args:
            arg = raw.strip()
            if arg in _PGBENCH_CONN_FLAGS or _is_short_conn_flag(arg):
                return True
        return False
    return False


def _file_step(
    shared: List[str], value: str, workspace_root: Optional[str], cwd: str
) -> Tuple[RunStep, bool]:
    if not value.strip():
        raise MissingValue("--file")
    step_args = list(shared) + ["-f", "-"]
    if value == "-":
        return RunStep(args=step_args), True
    path = resolve_file_path(value, workspace_root, cwd)
    try:
        with open(path, "r", encoding="utf-8") as f:
            text = f.read()
    except OSError as e:
        raise UsageError(f"cannot read {path}: {e}") from e
    return RunStep(args=step_args, stdin=text), False


def build_psql_run_steps(
    args: List[str],
    workspace_root: Optional[str],
    cwd: str,
    stdin: Optional[IO] = None,
) -> List[RunStep]:
    """
    Split psql run arguments into one step per ``-c`` command or ``-f`` file.

    Non-command arguments seen so far are shared by every following step.
    Script files are read locally and sent as the step's stdin.
    """
    shared: List[str] = []
    steps: List[RunStep] = []
    stdin_step = -1

    def add_file(value: str) -> None:
        nonlocal stdin_step
        step, is_stdin = _file_step(shared, value, workspace_root, cwd)
        if is_stdin:
            if stdin_step != -1:
                raise UsageError("Multiple stdin file arguments are not supported")
            stdin_step = len(steps)
        steps.append(step)

    i = 0
    while i < len(args):
        arg = args[i]
        if arg in ("-c", "--command"):
            if i + 1 >= len(args):
                raise MissingValue(arg)
            steps.append(RunStep(args=list(shared) + ["-c", args[i + 1]]))
            i += 2
            continue
        if arg in ("-f", "--file"):
            if i + 1 >= len(args):
                raise MissingValue(arg)
            add_file(args[i + 1])
            i += 2
            continue
        if arg.startswith("--command="):
            steps.append(RunStep(args=list(shared) + ["-c", arg[len("--command=") :]]))
        elif arg.startswith("-c") and len(arg) > 2:
            steps.append(RunStep(args=list(shared) + ["-c", arg[2:]]))
        elif arg.startswith("--file="):
            add_file(arg[len("--file=") :])
        elif arg.startswith("-f") and len(arg) > 2:
            add_file(arg[2:])
        else:
            shared.append(arg)
        i += 1

    if stdin_step != -1:
        steps[stdin_step].stdin = read_stdin(stdin)

    if not steps:
        return [RunStep(args=shared)]
    logger.debug(f"psql run split into {len(steps)} step(s)")
    return steps
