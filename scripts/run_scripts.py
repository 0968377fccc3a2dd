#!/usr/bin/env python3
"""
ScriptWatch Script Runner.

Runs a directory of scripts in the foreground, reloading them as they
change, until interrupted.
Requires Python 3.11+.

Usage:
    python scripts/run_scripts.py /path/to/scripts --init-script init.py
"""

import argparse
import sys
import threading
from pathlib import Path

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))

from loader.reconciler import Reconciler
from runtime.engine import PythonScriptEngine
from utils.config import get_settings
from utils.logger import configure_logging, get_logger


configure_logging()
logger = get_logger("run_scripts")


def run_scripts(
    directory: Path,
    init_script: str,
    extra_paths: list[str],
    poll_interval_ms: int | None = None,
    preload: bool = True,
    stop: threading.Event | None = None,
) -> dict:
    """
    Host a script directory until stopped.

    Args:
        directory: Script root
        init_script: Script watched first; it watches the rest
        extra_paths: Additional paths to watch
        poll_interval_ms: Override for the poll interval
        preload: Whether to settle load chains before polling
        stop: Event that ends the run; runs until interrupted if None

    Returns:
        Dictionary with run statistics
    """
    stop = stop or threading.Event()
    reconciler = Reconciler(
        directory,
        PythonScriptEngine(),
        poll_interval_ms=poll_interval_ms,
    )
    reconciler.watch([init_script, *extra_paths])

    cycles = 0
    try:
        if preload:
            cycles = reconciler.preload()
        reconciler.start()
        logger.info(
            "scripts_running",
            path=str(directory),
            scripts=[s.path.as_posix() for s in reconciler.scripts()],
        )
        stop.wait()
    finally:
        loaded = len(reconciler.scripts())
        reconciler.shutdown()

    return {"preload_cycles": cycles, "scripts_at_exit": loaded}


def main() -> None:
    """Main entry point."""
    settings = get_settings()

    parser = argparse.ArgumentParser(
        description="Run a directory of hot-reloaded scripts"
    )
    parser.add_argument(
        "path",
        type=Path,
        nargs="?",
        default=settings.scripts.directory,
        help="Script root directory",
    )
    parser.add_argument(
        "--init-script",
        default=settings.scripts.init_script,
        help="Script loaded first, relative to the root",
    )
    parser.add_argument(
        "--watch",
        action="append",
        default=[],
        help="Additional path to watch (repeatable)",
    )
    parser.add_argument(
        "--poll-interval",
        type=int,
        default=None,
        help="Milliseconds between reconciliation cycles",
    )
    parser.add_argument(
        "--no-preload",
        action="store_true",
        default=False,
        help="Skip settling load chains before polling starts",
    )

    args = parser.parse_args()

    if not args.path.is_dir():
        print(f"Error: Path is not a directory: {args.path}")
        sys.exit(1)

    try:
        result = run_scripts(
            args.path,
            init_script=args.init_script,
            extra_paths=args.watch,
            poll_interval_ms=args.poll_interval,
            preload=not args.no_preload,
        )
    except KeyboardInterrupt:
        print("\nStopped by user")
        return

    print(f"Scripts loaded at exit: {result['scripts_at_exit']}")


if __name__ == "__main__":
    main()
