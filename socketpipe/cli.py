"""Command line entry point for socketpipe.

Client form:

    socketpipe [-b] [-h host] [-t timeout] -i|o|r|l { command [args ...] }

Server form (issued by the client through the login command, never by hand):

    socketpipe -s host port command [args ...]

Stdout belongs to the consumer (client) or to the connection (server); logs go
to stderr or to --log-file only.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import Optional, Sequence, Tuple

from .config import (
    REMOTE_PROGRAM_ENV,
    SERVER_FLAG,
    PipelineConfig,
    RoleCommand,
    default_remote_program,
    split_remote_program,
)
from .errors import SocketpipeError, UsageError
from .rendezvous import run_client
from .server import run_server

PROG = "socketpipe"
LOG_FILE_ENV = "SOCKETPIPE_LOG_FILE"
LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"
EXIT_INTERRUPTED = 130

ROLE_FLAGS = {
    "-i": "input",
    "--input": "input",
    "-o": "output",
    "--output": "output",
    "-r": "remote",
    "--remote": "remote",
    "-l": "login",
    "--login": "login",
}
BLOCK_OPEN = "{"
BLOCK_CLOSE = "}"

USAGE = (
    f"usage:\t{PROG} [-b] [-h host] [-t timeout] [-i|o|r|l {{ command [args ...] }}]\n"
    "\t(must specify a -l and a -r command and at least one of -i or -o)\n"
)


class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:  # type: ignore[override]
        raise UsageError(message)


def extract_role_blocks(argv: Sequence[str]) -> Tuple[dict, list[str]]:
    """Pull the ``-i|-o|-r|-l { ... }`` blocks out of argv.

    Literal braces inside a block are fine as long as they balance. Returns
    the role commands and the remaining tokens for the option parser.
    """
    roles: dict[str, RoleCommand] = {}
    rest: list[str] = []
    index = 0
    while index < len(argv):
        token = argv[index]
        role = ROLE_FLAGS.get(token)
        if role is None:
            rest.append(token)
            index += 1
            continue
        index += 1
        if index >= len(argv) or argv[index] != BLOCK_OPEN:
            raise UsageError("opening block expected")
        start = index + 1
        depth = 1
        index = start
        while True:
            if index >= len(argv):
                raise UsageError("unterminated block")
            if argv[index] == BLOCK_OPEN:
                depth += 1
            elif argv[index] == BLOCK_CLOSE:
                depth -= 1
            if depth == 0:
                break
            index += 1
        if index == start:
            raise UsageError("command can not be empty")
        roles[role] = tuple(argv[start:index])
        index += 1
    return roles, rest


def build_arg_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog=PROG,
        add_help=False,
        description=(
            "Connect local producer/consumer processes to a remote command over "
            "a single TCP connection negotiated through a remote login command."
        ),
        epilog=(
            "Role commands: -i { producer }, -o { consumer }, -r { remote command }, "
            "-l { login command, e.g. ssh host }."
        ),
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--help", action="help", help="Show this help and exit.")
    parser.add_argument(
        "-b",
        "--batch",
        action="store_true",
        help="Detach the login command from stdin/stdout (for non-interactive use).",
    )
    parser.add_argument(
        "-h",
        "--host",
        metavar="ADDRESS",
        help="Local address the remote end connects back to (skips the lookup through the login command).",
    )
    parser.add_argument(
        "-t",
        "--timeout",
        type=float,
        default=0,
        help="Seconds to wait for the remote end to connect (0 waits forever).",
    )
    parser.add_argument(
        "--remote-program",
        metavar="CMD",
        help=(
            "How to start socketpipe on the remote host "
            f"(default: ${REMOTE_PROGRAM_ENV} or {PROG})."
        ),
    )
    parser.add_argument(
        "-v", "--verbose", action="count", default=0, help="Increase verbosity."
    )
    parser.add_argument(
        "-q", "--quiet", action="count", default=0, help="Decrease verbosity."
    )
    parser.add_argument(
        "--log-file",
        metavar="PATH",
        default=os.environ.get(LOG_FILE_ENV),
        help="Write logs to file (use [PID] token for process id).",
    )
    return parser


def parse_arguments(argv: Sequence[str]) -> Tuple[PipelineConfig, argparse.Namespace]:
    roles, rest = extract_role_blocks(argv)
    args = build_arg_parser().parse_args(rest)
    if args.timeout < 0:
        raise UsageError("-t expects a non-negative number of seconds")
    if args.remote_program is not None:
        remote_program = split_remote_program(args.remote_program)
    else:
        remote_program = default_remote_program()
    config = PipelineConfig(
        input=roles.get("input"),
        output=roles.get("output"),
        remote=roles.get("remote"),
        login=roles.get("login"),
        batch=args.batch,
        timeout=args.timeout or None,
        local_address=args.host,
        remote_program=remote_program,
    )
    return config.validate(), args


def compute_log_level(verbose: int, quiet: int) -> int:
    level = logging.ERROR - (10 * verbose) + (10 * quiet)
    if level < logging.DEBUG:
        level = logging.DEBUG
    if level > logging.CRITICAL:
        level = logging.CRITICAL
    return level


def expand_pid_token(path: str, pid: int) -> str:
    return path.replace("[PID]", str(pid))


def configure_logging(
    log_file: Optional[str], verbose: int = 0, quiet: int = 0
) -> logging.Logger:
    logger = logging.getLogger(PROG)
    logger.setLevel(compute_log_level(verbose, quiet))
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT)

    log_path = (log_file or "").strip()
    if log_path:
        log_path = os.path.expanduser(
            os.path.expandvars(expand_pid_token(log_path, os.getpid()))
        )
        log_dir = os.path.dirname(log_path)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        handler: logging.Handler = logging.FileHandler(
            log_path, mode="w", encoding="utf-8"
        )
    elif verbose > 0:
        handler = logging.StreamHandler(sys.stderr)
    else:
        logger.addHandler(logging.NullHandler())
        return logger
    handler.setFormatter(formatter)
    logger.addHandler(handler)
    return logger


def report_error(
    exc: SocketpipeError, logger: Optional[logging.Logger] = None
) -> int:
    if logger is not None:
        logger.critical("%s", exc, exc_info=logger.isEnabledFor(logging.DEBUG))
    sys.stderr.write(f"{PROG}: {exc}\n")
    if isinstance(exc, UsageError):
        sys.stderr.write(USAGE)
    return exc.exit_code


def main(argv: Optional[Sequence[str]] = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    if not argv:
        return report_error(UsageError("no arguments specified"))

    if argv[0] == SERVER_FLAG:
        try:
            logger = configure_logging(os.environ.get(LOG_FILE_ENV))
        except Exception as exc:
            sys.stderr.write(f"Failed to configure logging: {exc}\n")
            return 1
        try:
            return run_server(argv[1:], logger)
        except SocketpipeError as exc:
            return report_error(exc, logger)

    try:
        config, args = parse_arguments(argv)
    except UsageError as exc:
        return report_error(exc)

    try:
        logger = configure_logging(args.log_file, args.verbose, args.quiet)
    except Exception as exc:
        sys.stderr.write(f"Failed to configure logging: {exc}\n")
        return 1

    try:
        result = run_client(config, logger)
    except SocketpipeError as exc:
        return report_error(exc, logger)
    except KeyboardInterrupt:
        logger.info("Interrupted; pipeline terminated.")
        return EXIT_INTERRUPTED
    return result.exit_status
