#!/usr/bin/env python3
"""
Process shim for tinydock containers.

Usage:
    shim.py EXIT_FILE -- COMMAND [ARG...]

Runs COMMAND, forwards termination signals to it, and writes its exit code
to EXIT_FILE once it finishes. The CLI that started a container is usually
gone by then, so the exit file is how the code is recovered later.

Exit codes follow the shell convention: 128+N when the command was killed
by signal N, 127 when it could not be found, 126 when it could not be
executed.

Only the standard library is used; the shim runs as a plain script.
"""

import os
import signal
import subprocess
import sys
from typing import List, Optional

FORWARDED_SIGNALS = (
    signal.SIGTERM,
    signal.SIGINT,
    signal.SIGHUP,
    signal.SIGQUIT,
    signal.SIGUSR1,
    signal.SIGUSR2,
)


def write_exit_code(path: str, code: int) -> None:
    """Write the exit code atomically."""
    tmp = f"{path}.tmp"
    with open(tmp, "w") as f:
        f.write(f"{code}\n")
    os.replace(tmp, path)


def run(exit_file: str, command: List[str]) -> int:
    """Run the command to completion and record its exit code."""
    child: Optional[subprocess.Popen] = None
    pending: List[int] = []

    def forward(signum, frame):
        if child is None:
            pending.append(signum)
            return
        try:
            child.send_signal(signum)
        except ProcessLookupError:
            pass

    # Installed before the child exists so early signals are not lost
    for sig in FORWARDED_SIGNALS:
        signal.signal(sig, forward)

    try:
        child = subprocess.Popen(command)
    except FileNotFoundError:
        print(f"tinydock: executable file not found: {command[0]}", file=sys.stderr)
        code = 127
    except PermissionError:
        print(f"tinydock: permission denied: {command[0]}", file=sys.stderr)
        code = 126
    except OSError as e:
        print(f"tinydock: cannot execute {command[0]}: {e}", file=sys.stderr)
        code = 126
    else:
        for signum in pending:
            child.send_signal(signum)
        returncode = child.wait()
        code = 128 - returncode if returncode < 0 else returncode

    write_exit_code(exit_file, code)
    return code


def main(argv: Optional[List[str]] = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    if len(args) < 3 or args[1] != "--":
        print("usage: shim.py EXIT_FILE -- COMMAND [ARG...]", file=sys.stderr)
        return 2
    return run(args[0], args[2:])


if __name__ == "__main__":
    sys.exit(main())
