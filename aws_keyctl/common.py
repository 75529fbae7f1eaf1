"""Shared helpers: error reporting, subprocess execution, terminal output."""

from __future__ import annotations

import logging
import shlex
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Any, Callable, Optional, Sequence, TextIO, Union

import yaml

log = logging.getLogger("aws_keyctl")

COLOR_NORMAL = "\033[0m"
COLOR_SUCCESS = "\033[1m\033[92m"

_EXCERPT_LIMIT = 2000

Runner = Callable[..., "subprocess.CompletedProcess[Any]"]


def die(msg: str) -> None:
    print(f"ERROR: {msg}", file=sys.stderr)
    raise SystemExit(1)


def abort(msg: str) -> None:
    """Stop after an operator decision (not an error)."""
    log.warning(msg)
    raise SystemExit(1)


def configure_logging(debug: bool = False) -> None:
    root = logging.getLogger("aws_keyctl")
    root.setLevel(logging.DEBUG if debug else logging.INFO)
    if not root.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
        root.addHandler(handler)
    root.propagate = False


def load_yaml(path: Path) -> Any:
    return yaml.safe_load(path.read_text(encoding="utf-8"))


def as_text(data: Union[str, bytes, None]) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


def _excerpt(data: Union[str, bytes, None]) -> str:
    text = as_text(data).strip()
    return (text[:_EXCERPT_LIMIT] + "…") if len(text) > _EXCERPT_LIMIT else text


def require_tool(name: str) -> None:
    if shutil.which(name) is None:
        die(f"{name} could not be found.")


def run(
    cmd: Sequence[str],
    *,
    input_data: Union[str, bytes, None] = None,
    capture: bool = True,
    check: bool = True,
    sensitive: bool = False,
    action: Optional[str] = None,
) -> subprocess.CompletedProcess[Any]:
    """Run one external command to completion.

    With ``capture=False`` the child inherits the terminal, so long-running tools
    (terraform apply/destroy) stream their own progress. ``sensitive`` keeps the
    arguments out of the debug trace and the output out of error messages.
    With ``check=False`` the caller owns both spawn failures and exit codes.
    """
    if sensitive:
        log.debug("+ %s ...", shlex.join(list(cmd[:3])))
    else:
        log.debug("+ %s", shlex.join(list(cmd)))

    text = not isinstance(input_data, bytes)
    label = action or " ".join(cmd[:3])
    try:
        res = subprocess.run(list(cmd), input=input_data, capture_output=capture, text=text, check=False)
    except FileNotFoundError:
        if not check:
            raise
        die(f"{cmd[0]} not found in PATH")
        raise  # unreachable

    if check and res.returncode != 0:
        if sensitive:
            die(f"{label} failed (exit code {res.returncode}); output suppressed for safety")
        detail = f": {_excerpt(res.stderr)}" if capture and _excerpt(res.stderr) else ""
        die(f"{label} failed (exit code {res.returncode}){detail}")
    return res


def use_color(stream: TextIO) -> bool:
    isatty = getattr(stream, "isatty", None)
    return bool(isatty and isatty())


def success_marker(stream: TextIO) -> str:
    if use_color(stream):
        return f"{COLOR_SUCCESS}✔{COLOR_NORMAL} Success\n"
    return "✔ Success\n"
