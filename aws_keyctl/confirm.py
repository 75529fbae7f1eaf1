from __future__ import annotations

from typing import Optional, TextIO

from .common import die

TTY_PATH = "/dev/tty"

_SUFFIXES = {"Y": "Y/n", "N": "y/N", None: "y/n"}


def ask(prompt: str, default: Optional[str], stdin: TextIO, stdout: TextIO) -> bool:
    if default is not None:
        default = default.upper()
    if default not in _SUFFIXES:
        raise ValueError(f"default must be 'Y', 'N' or None, got: {default!r}")

    while True:
        stdout.write(f"{prompt} [{_SUFFIXES[default]}] ")
        stdout.flush()

        line = stdin.readline()
        if line == "":
            die("No answer on the terminal (end of input); aborting")

        reply = line.strip() or (default or "")
        if reply[:1] in ("y", "Y"):
            return True
        if reply[:1] in ("n", "N"):
            return False


def confirm(prompt: str, default: Optional[str] = None) -> bool:
    """Ask a yes/no question on the controlling terminal.

    Reads from /dev/tty rather than stdin so the gate still works when the
    command's own input is a pipe (``aws-keyctl decrypt | aws-keyctl bw-sync``).
    """
    try:
        tty = open(TTY_PATH, "r+", encoding="utf-8")
    except OSError as e:
        die(f"Confirmation requires an interactive terminal ({TTY_PATH}): {e}")
        return False  # unreachable
    with tty:
        return ask(prompt, default, tty, tty)
