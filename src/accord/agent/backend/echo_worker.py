"""Local deterministic worker for daemon and backend integration tests."""

from __future__ import annotations

import argparse
import subprocess
import sys
import time
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Echo the prompt, optionally edit a file, linger, and exit with the given code."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument(
        "--touch",
        action="append",
        default=[],
        help="Append a marker line to this file (relative to the working directory).",
    )
    parser.add_argument(
        "--spawn-child",
        metavar="PID_FILE",
        help="Start a long-sleeping child and write its pid to PID_FILE.",
    )
    parser.add_argument("prompt", nargs="?", default="")
    args = parser.parse_args(argv)

    first_line = next((line for line in args.prompt.splitlines() if line.strip()), "")
    print(f"echo_worker: {first_line}")

    for target in args.touch:
        path = Path(target)
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as handle:
            handle.write(f"# touched by echo_worker at {time.time():.6f}\n")

    if args.spawn_child:
        child = subprocess.Popen(  # noqa: S603
            [sys.executable, "-c", "import time; time.sleep(300)"],
        )
        Path(args.spawn_child).write_text(str(child.pid), "utf-8")

    if args.sleep > 0:
        time.sleep(args.sleep)
    return args.exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
