"""Sandbox worker entrypoint: runs inside the container.

Reads one dispatch message from stdin, runs the inmate method and writes
the response messages to stdout. Anything the inmate prints is captured
and forwarded as ``stdout`` messages, so stdout carries only the protocol.

Usage:
    python -m jailhouse.worker --inmate inmates.render:Render
    python -m jailhouse.worker --combined --inmate inmates.render:Render

In combined mode the runner executes in a child process with a dedicated
side-channel pipe, and this process merges the child's stdout and side
channel into one stream.
"""

from __future__ import annotations

import argparse
import os
import subprocess
import sys

from loguru import logger

from jailhouse.protocol.entrypoint import OutputCombiner
from jailhouse.protocol.inmate import InmateRunner


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse worker CLI arguments.

    Args:
        argv: Argument list (default: sys.argv[1:]).

    Returns:
        Parsed arguments namespace.
    """
    parser = argparse.ArgumentParser(description="Jailhouse sandbox worker")
    parser.add_argument(
        "--inmate",
        default=os.environ.get("JAILHOUSE_INMATE") or None,
        help="Inmate methods as module:attribute (default: $JAILHOUSE_INMATE)",
    )
    parser.add_argument(
        "--combined",
        action="store_true",
        help="Run the inmate in a child process and merge its outputs",
    )
    parser.add_argument(
        "--sidechannel-fd",
        type=int,
        default=None,
        help="Write response messages to this descriptor instead of stdout",
    )
    parser.add_argument(
        "--no-capture",
        action="store_true",
        help="Leave the inmate's stdout alone instead of intercepting it",
    )
    parser.add_argument("--log-level", default="WARNING", help="Log level for stderr")
    args = parser.parse_args(argv)
    if not args.inmate:
        parser.error("--inmate is required (or set JAILHOUSE_INMATE)")
    return args


def _run_inmate(args: argparse.Namespace) -> None:
    """Run the call in this process.

    Without ``--sidechannel-fd`` the side channel is a duplicate of the
    original stdout, taken before fd 1 is redirected for the inmate.
    """
    sidechannel_fd = args.sidechannel_fd if args.sidechannel_fd is not None else os.dup(1)
    with os.fdopen(sidechannel_fd, "wb", buffering=0) as sidechannel:
        runner = InmateRunner(
            args.inmate,
            sys.stdin.buffer,
            sidechannel,
            capture_stdout=not args.no_capture,
        )
        runner.run()


def _run_combined(args: argparse.Namespace) -> int:
    """Run the call in a child process and merge its stdout and side channel.

    Returns:
        The child's exit code.
    """
    read_fd, write_fd = os.pipe()
    cmd = [
        sys.executable, "-m", "jailhouse.worker",
        "--inmate", args.inmate,
        "--sidechannel-fd", str(write_fd),
        "--no-capture",
        "--log-level", args.log_level,
    ]
    try:
        proc = subprocess.Popen(
            cmd,
            stdin=sys.stdin.buffer,
            stdout=subprocess.PIPE,
            pass_fds=(write_fd,),
            env={**os.environ, "PYTHONUNBUFFERED": "1"},
        )
    except BaseException:
        os.close(read_fd)
        raise
    finally:
        os.close(write_fd)
    assert proc.stdout is not None

    combiner = OutputCombiner(sys.stdout.buffer, proc.stdout.fileno(), read_fd).start()
    try:
        returncode = proc.wait()
    finally:
        combiner.finish()
        proc.stdout.close()
        os.close(read_fd)
    if returncode != 0:
        logger.warning("Inmate process exited abnormally", returncode=returncode)
    return returncode


def _main(argv: list[str] | None = None) -> int:
    """Worker entrypoint."""
    args = _parse_args(argv)

    # Route loguru to stderr so stdout is reserved for protocol messages
    logger.remove()
    logger.add(sys.stderr, level=args.log_level.upper())

    if args.combined:
        return _run_combined(args)
    _run_inmate(args)
    return 0


if __name__ == "__main__":
    sys.exit(_main())
