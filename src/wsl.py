"""
WSL distribution discovery for engines running inside WSL on Windows hosts.
"""

import logging
import subprocess
import sys
from dataclasses import dataclass
from typing import Callable, List, Optional

from errors import WslError

logger = logging.getLogger(__name__)

LIST_TIMEOUT_S = 10


@dataclass
class Distro:
    """One row of ``wsl.exe --list --verbose``."""

    name: str
    default: bool = False
    state: str = ""
    version: int = 0


def parse_distro_list(output: str) -> List[Distro]:
    """
    Parse ``wsl.exe --list --verbose`` output.

    Raises:
        WslError: If no distribution rows are found
    """
    distros = []
    for line in output.splitlines():
        fields = line.split()
        if not fields or fields[0] == "NAME":
            continue
        default = fields[0] == "*"
        if default:
            fields = fields[1:]
        if len(fields) < 3:
            continue
        try:
            version = int(fields[2])
        except ValueError:
            continue
        distros.append(
            Distro(name=fields[0], default=default, state=fields[1], version=version)
        )
    if not distros:
        raise WslError("no WSL distros found")
    return distros


def select_distro(distros: List[Distro], preferred: Optional[str] = None) -> str:
    """
    Choose a distribution: the preferred one, else the only one, else the default.

    Raises:
        WslError: If the choice is missing or ambiguous
    """
    if not distros:
        raise WslError("no WSL distros found")
    if preferred:
        for distro in distros:
            if distro.name == preferred:
                return distro.name
        raise WslError(f"requested WSL distro not found: {preferred}")
    if len(distros) == 1:
        return distros[0].name
    for distro in distros:
        if distro.default:
            return distro.name
    raise WslError("multiple WSL distros found")


def _decode(raw: bytes) -> str:
    # wsl.exe writes UTF-16LE when its output is redirected
    if b"\x00" in raw:
        return raw.decode("utf-16-le", errors="replace").lstrip("\ufeff")
    return raw.decode("utf-8", errors="replace")


def list_distros(run: Callable = subprocess.run) -> List[Distro]:
    """
    List installed WSL distributions.

    Raises:
        WslError: If wsl.exe cannot be run or lists nothing
    """
    try:
        proc = run(
            ["wsl.exe", "--list", "--verbose"],
            capture_output=True,
            timeout=LIST_TIMEOUT_S,
            check=True,
        )
    except (OSError, subprocess.SubprocessError) as e:
        raise WslError(f"WSL unavailable: {e}") from e
    return parse_distro_list(_decode(proc.stdout))


def resolve_distro(
    preferred: Optional[str],
    lister: Callable[[], List[Distro]] = list_distros,
    platform: str = sys.platform,
) -> Optional[str]:
    """
    Determine the WSL distribution hosting the local engine.

    Returns None on non-Windows hosts or when WSL is not available.
    """
    if platform != "win32":
        return None
    if preferred and preferred.strip():
        return preferred.strip()
    try:
        return select_distro(lister())
    except WslError as e:
        logger.debug(f"WSL distro not resolved: {e}")
        return None
