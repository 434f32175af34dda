#lifecycle_engine\environment\envfile.py

"""Read and merge `.env` files without disturbing what operators wrote."""

import logging
import re
from pathlib import Path
from typing import Dict, Mapping

from dotenv import dotenv_values

logger = logging.getLogger(__name__)


APPEND_MARKER = "# --- Appended by lifecycle engine ---"

_ASSIGNMENT = re.compile(r"^\s*(?:export\s+)?([A-Za-z_][A-Za-z0-9_]*)\s*=")
_NEEDS_QUOTES = re.compile(r"[\s#'\"\\$]")


def read_env(path: Path) -> Dict[str, str]:
    """Parsed key/value pairs of an env file; empty if it does not exist."""
    path = Path(path)
    if not path.is_file():
        return {}
    return {k: v for k, v in dotenv_values(path).items() if v is not None}


def format_value(value: str) -> str:
    if value == "" or not _NEEDS_QUOTES.search(value):
        return value
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def merge_env_file(path: Path, updates: Mapping[str, str]) -> bool:
    """
    Write `updates` into the file at `path`.

    Existing keys are replaced in place; comments, blank lines and unknown
    lines keep their position. Keys not yet present are appended under a
    marker comment. Returns True if the file content changed.
    """
    path = Path(path)
    if not updates:
        return False

    original = path.read_text(encoding="utf-8") if path.exists() else ""
    lines = original.splitlines()

    done = set()
    out = []
    for line in lines:
        match = _ASSIGNMENT.match(line)
        if match and match.group(1) in updates:
            key = match.group(1)
            out.append(f"{key}={format_value(str(updates[key]))}")
            done.add(key)
        else:
            out.append(line)

    missing = [k for k in updates if k not in done]
    if missing:
        if APPEND_MARKER not in out:
            if out and out[-1].strip() != "":
                out.append("")
            out.append(APPEND_MARKER)
        for key in missing:
            out.append(f"{key}={format_value(str(updates[key]))}")

    content = "\n".join(out) + "\n"
    if content == original:
        return False

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    logger.debug(f"[env] wrote {path} ({len(missing)} appended)")
    return True
