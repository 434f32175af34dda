#lifecycle_engine\core\commands.py

"""Shell-free external command execution shared by the adapters."""

import logging
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)


class CommandFailed(Exception):
    """
    External command did not succeed.

    `returncode` is None when the command never ran to completion
    (binary missing or timed out).
    """

    def __init__(self, argv: Sequence[str], returncode: Optional[int], output: str):
        self.argv = list(argv)
        self.returncode = returncode
        self.output = output
        super().__init__(f"{argv[0]} exited with {returncode}: {output}")

    @property
    def not_found(self) -> bool:
        return self.returncode is None and self.output.startswith("not found")


def _tail(text: str, lines: int = 20) -> str:
    return "\n".join((text or "").strip().splitlines()[-lines:])


def run_command(
    argv: Sequence[str],
    cwd: Optional[Path] = None,
    env: Optional[Dict[str, str]] = None,
    timeout: float = 60,
) -> str:
    """Run `argv` and return its stdout. Raises CommandFailed otherwise."""
    argv: List[str] = [str(a) for a in argv]
    logger.debug(f"$ {' '.join(argv)} (cwd={cwd})")

    try:
        result = subprocess.run(
            argv,
            cwd=str(cwd) if cwd else None,
            env=env,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except FileNotFoundError as e:
        raise CommandFailed(argv, None, f"not found: {e.filename or argv[0]}") from e
    except subprocess.TimeoutExpired as e:
        raise CommandFailed(argv, None, f"timed out after {timeout}s") from e

    if result.returncode != 0:
        raise CommandFailed(argv, result.returncode, _tail(result.stderr or result.stdout))

    return result.stdout
