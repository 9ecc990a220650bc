"""rcon -- Send commands to a game server over RCON."""

import argparse
import logging
import sys
from typing import Optional, TextIO

import rconpy
from rconpy.constants import RconProtocol
from rconpy.errors import RconError

# Exit codes
EXIT_OK = 0
EXIT_COMMAND_ERROR = 1
EXIT_USAGE_ERROR = 2
EXIT_INTERRUPTED = 130

_QUIT_COMMANDS = frozenset({"quit", "exit"})


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Send commands to a game server over RCON")
    parser.add_argument("-H", "--host", default=None, help="server host (default: RCON_HOST or localhost)")
    parser.add_argument("-P", "--port", type=int, default=None, help="server port (default: RCON_PORT or 27015)")
    parser.add_argument("-p", "--password", default=None, help="RCON password (default: RCON_PASSWORD)")
    parser.add_argument(
        "--protocol", choices=[p.value for p in RconProtocol], default=None, help="transport (default: tcp)"
    )
    parser.add_argument("--timeout", type=int, default=None, help="request timeout in milliseconds (default: 5000)")
    parser.add_argument(
        "--no-challenge", dest="challenge", action="store_false", default=None, help="skip the UDP challenge handshake"
    )
    parser.add_argument("--trace", action="store_true", help="log every packet (implies --verbose)")
    parser.add_argument("-v", "--verbose", action="store_true", help="verbose output")
    parser.add_argument("commands", nargs="*", metavar="COMMAND", help="command(s) to run; stdin if omitted")
    return parser


def _setup_logging(verbose: bool):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _run_commands(conn, commands, out: TextIO) -> int:
    status = EXIT_OK
    for command in commands:
        try:
            print(conn.send(command), file=out)
        except RconError as e:
            print(f"Error: {command!r}: {e}", file=sys.stderr)
            status = EXIT_COMMAND_ERROR
    return status


def _run_interactive(conn, stdin: TextIO, out: TextIO) -> int:
    status = EXIT_OK
    prompt = stdin.isatty()
    while True:
        if prompt:
            print(f"{conn.host}:{conn.port}> ", end="", file=out, flush=True)
        line = stdin.readline()
        if not line:
            break
        command = line.strip()
        if not command:
            continue
        if command.lower() in _QUIT_COMMANDS:
            break
        status = max(status, _run_commands(conn, [command], out))
    return status


def main(argv: Optional[list] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _setup_logging(args.verbose or args.trace)

    if args.timeout is not None and args.timeout < 0:
        print("Invalid timeout: must be >= 0", file=sys.stderr)
        return EXIT_USAGE_ERROR

    try:
        conn = rconpy.create_sync_connection(
            host=args.host,
            port=args.port,
            password=args.password,
            protocol=args.protocol,
            timeout=args.timeout,
            challenge=args.challenge,
            trace=args.trace,
        )
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_USAGE_ERROR

    try:
        conn.connect()
    except KeyboardInterrupt:
        return EXIT_INTERRUPTED
    except Exception as e:
        print(f"Connection error: {e}", file=sys.stderr)
        return EXIT_COMMAND_ERROR

    try:
        if args.commands:
            return _run_commands(conn, args.commands, sys.stdout)
        return _run_interactive(conn, sys.stdin, sys.stdout)
    except KeyboardInterrupt:
        return EXIT_INTERRUPTED
    finally:
        conn.close()


if __name__ == "__main__":
    sys.exit(main())
