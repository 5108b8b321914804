"""
Configuration management for the sqlrs client.
"""

import json
import logging
import os
import re
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

from errors import SqlrsError, UsageError

logger = logging.getLogger(__name__)

MODES = ("local", "remote")
ENGINE_STATE_FILE = "engine.json"

_DURATION_RE = re.compile(r"^(\d+(?:\.\d+)?)(ms|s|m|h)?$")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, None: 1.0}


def parse_duration(value) -> float:
    """
    Parse a duration such as ``30s``, ``5m``, ``1h``, ``250ms`` or ``12``.

    Returns:
        Duration in seconds

    Raises:
        UsageError: If the value is not a duration
    """
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        match = _DURATION_RE.match(str(value).strip().lower())
        if not match:
            raise UsageError(f"invalid duration: {value}")
        seconds = float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
    if seconds < 0:
        raise UsageError(f"invalid duration: {value}")
    return seconds


def default_state_dir(environ: Mapping[str, str]) -> str:
    base = environ.get("XDG_STATE_HOME") or os.path.join(
        os.path.expanduser("~"), ".local", "state"
    )
    return os.path.join(base, "sqlrs")


@dataclass
class ExecutionContext:
    """Settings shared by every step of one CLI invocation."""

    mode: str = "local"
    endpoint: str = ""
    auth_token: str = ""
    timeout: float = 30.0
    startup_timeout: float = 5.0
    verbose: bool = False
    workspace_root: str = ""
    watch_timeout: float = 7200.0
    poll_interval: float = 1.0
    state_dir: str = ""
    wsl_distro: str = ""
    liquibase_exec: str = ""
    liquibase_exec_mode: str = ""
    image: str = ""
    output: str = "human"

    @property
    def request_timeout(self) -> Tuple[float, float]:
        """``(connect, read)`` timeout pair for HTTP requests."""
        return (self.startup_timeout, self.timeout)

    @classmethod
    def from_args(cls, args, environ: Optional[Mapping[str, str]] = None) -> "ExecutionContext":
        """
        Create configuration from command-line arguments.

        Flags win over ``SQLRS_*`` environment variables, which win over defaults.

        Args:
            args: Parsed argparse arguments
            environ: Environment mapping (defaults to os.environ)

        Returns:
            ExecutionContext instance

        Raises:
            UsageError: For an unknown mode or a malformed duration
        """
        env = os.environ if environ is None else environ

        def pick(flag_value, env_name: str, default: str = "") -> str:
            if flag_value is not None and str(flag_value).strip():
                return str(flag_value).strip()
            return env.get(env_name, "").strip() or default

        mode = pick(args.mode, "SQLRS_MODE", "local").lower()
        if mode not in MODES:
            raise UsageError(f"invalid mode: {mode}")

        return cls(
            mode=mode,
            endpoint=pick(args.endpoint, "SQLRS_ENDPOINT"),
            auth_token=env.get("SQLRS_AUTH_TOKEN", "").strip(),
            timeout=parse_duration(args.timeout),
            startup_timeout=parse_duration(args.startup_timeout),
            verbose=args.verbose,
            workspace_root=pick(args.workspace, "SQLRS_WORKSPACE"),
            watch_timeout=parse_duration(args.watch_timeout),
            poll_interval=parse_duration(args.poll_interval),
            state_dir=pick(args.state_dir, "SQLRS_STATE_DIR", default_state_dir(env)),
            wsl_distro=pick(args.wsl_distro, "SQLRS_WSL_DISTRO"),
            liquibase_exec=env.get("SQLRS_LIQUIBASE_EXEC", "").strip(),
            liquibase_exec_mode=env.get("SQLRS_LIQUIBASE_EXEC_MODE", "").strip(),
            image=env.get("SQLRS_IMAGE", "").strip(),
            output=args.output,
        )


def read_engine_state(state_dir: str) -> Tuple[str, str]:
    """
    Read the endpoint and auth token published by a running local engine.

    Raises:
        SqlrsError: If the engine state file is missing or unreadable
    """
    path = os.path.join(state_dir, ENGINE_STATE_FILE)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError as e:
        raise SqlrsError(f"local engine is not running (no {path})") from e
    except (OSError, ValueError) as e:
        raise SqlrsError(f"cannot read engine state {path}: {e}") from e
    if not isinstance(data, dict):
        raise SqlrsError(f"engine state {path} is not an object")

    endpoint = str(data.get("endpoint") or "").strip()
    if not endpoint:
        raise SqlrsError(f"engine state {path} has no endpoint")
    return endpoint, str(data.get("authToken") or "").strip()


def resolve_endpoint(ctx: ExecutionContext) -> Tuple[str, str]:
    """
    Determine the engine endpoint and auth token for the context.

    Remote mode requires an explicit endpoint. Local mode uses an explicit
    endpoint as is, or the engine state file for ``auto``/empty.

    Returns:
        Tuple of (endpoint, auth token)
    """
    endpoint = ctx.endpoint.strip()
    if ctx.mode == "remote":
        if not endpoint or endpoint == "auto":
            raise UsageError("remote mode requires explicit endpoint")
        logger.debug(f"Using remote endpoint {endpoint}")
        return endpoint, ctx.auth_token

    if endpoint and endpoint != "auto":
        return endpoint, ""
    endpoint, token = read_engine_state(ctx.state_dir)
    logger.debug(f"Local engine at {endpoint}")
    return endpoint, token
