"""CLI entry point for rest-dispatch.

Builds one request from command-line options, dispatches it through the
queue and prints the result as JSON.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from rest_dispatch.models import RequestResult
    from rest_dispatch.request import RequestConfig


def parse_name_value(value: str) -> tuple[str, str]:
    """Parse NAME=VALUE format (query and form parameters).

    Raises:
        argparse.ArgumentTypeError: If format is invalid.
    """
    if "=" not in value:
        raise argparse.ArgumentTypeError(
            f"Invalid format '{value}'. Expected NAME=VALUE (e.g., 'q=search term')"
        )
    name, param_value = value.split("=", 1)
    if not name:
        raise argparse.ArgumentTypeError(f"Invalid format '{value}'. Name cannot be empty.")
    return (name, param_value)


def parse_header(value: str) -> tuple[str, str]:
    """Parse NAME:VALUE format. Whitespace after the colon is dropped.

    Raises:
        argparse.ArgumentTypeError: If format is invalid.
    """
    if ":" not in value:
        raise argparse.ArgumentTypeError(
            f"Invalid format '{value}'. Expected NAME:VALUE (e.g., 'Accept: text/plain')"
        )
    name, header_value = value.split(":", 1)
    name = name.strip()
    if not name:
        raise argparse.ArgumentTypeError(f"Invalid format '{value}'. Header name cannot be empty.")
    return (name, header_value.lstrip())


def parse_credentials(value: str) -> tuple[str, str]:
    """Parse USER:PASSWORD format. The password may contain colons.

    Raises:
        argparse.ArgumentTypeError: If format is invalid.
    """
    if ":" not in value:
        raise argparse.ArgumentTypeError(
            f"Invalid format '{value}'. Expected USER:PASSWORD"
        )
    username, password = value.split(":", 1)
    return (username, password)


def parse_json_body(value: str) -> Any:
    """Parse a JSON document given on the command line.

    Raises:
        argparse.ArgumentTypeError: If value is not valid JSON.
    """
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        raise argparse.ArgumentTypeError(f"Invalid JSON body: {e}")


@dataclass
class RequestArgs:
    """Parsed arguments for request mode."""

    url: str
    method: str
    json_body: Any
    query: list[tuple[str, str]]
    form: list[tuple[str, str]]
    headers: list[tuple[str, str]]
    basic_auth: tuple[str, str] | None
    download: Path | None
    upload: Path | None
    config: Path | None
    # Transfer settings (None = use configured default)
    connect_timeout: int | None = None
    timeout: int | None = None
    max_redirects: int | None = None
    max_send_speed: int | None = None
    max_recv_speed: int | None = None
    wait: float | None = None
    verbose: bool = False


@dataclass
class ShowConfigArgs:
    """Parsed arguments for show-config mode."""

    config: Path | None
    verbose: bool = False


@dataclass
class _Outcome:
    """Collects the single result delivered to the CLI's callback."""

    results: list[RequestResult] = field(default_factory=list)

    def __call__(self, result: RequestResult, value: Any) -> None:
        self.results.append(result)


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with request and show-config subcommands."""
    parser = argparse.ArgumentParser(
        prog="rest-dispatch",
        description="Build an HTTP request, run it in the background dispatch queue and print the result.",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", required=True, help="Mode")

    # Request subcommand
    request_parser = subparsers.add_parser(
        "request",
        help="Send one request and print the response as JSON",
    )
    request_parser.add_argument("url", help="Base URL (query parameters are appended)")
    request_parser.add_argument(
        "--method",
        "-X",
        type=str.upper,
        default="GET",
        help="HTTP method for JSON requests (default: GET)",
    )
    request_parser.add_argument(
        "--json",
        type=parse_json_body,
        default=None,
        dest="json_body",
        metavar="DOCUMENT",
        help="JSON request body",
    )
    request_parser.add_argument(
        "--query",
        type=parse_name_value,
        action="append",
        default=[],
        metavar="NAME=VALUE",
        help="Append a query parameter (can be repeated)",
    )
    request_parser.add_argument(
        "--form",
        type=parse_name_value,
        action="append",
        default=[],
        metavar="NAME=VALUE",
        help="Append a form parameter and send a form POST (can be repeated)",
    )
    request_parser.add_argument(
        "--header",
        "-H",
        type=parse_header,
        action="append",
        default=[],
        dest="headers",
        metavar="NAME:VALUE",
        help="Set a request header (can be repeated; last value wins)",
    )
    request_parser.add_argument(
        "--basic-auth",
        type=parse_credentials,
        default=None,
        dest="basic_auth",
        metavar="USER:PASSWORD",
        help="Send HTTP basic auth credentials",
    )

    transfer_group = request_parser.add_mutually_exclusive_group()
    transfer_group.add_argument(
        "--download",
        type=Path,
        default=None,
        metavar="PATH",
        help="Download the response body into PATH",
    )
    transfer_group.add_argument(
        "--upload",
        type=Path,
        default=None,
        metavar="PATH",
        help="Upload the contents of PATH with PUT",
    )

    request_parser.add_argument(
        "--connect-timeout",
        type=int,
        default=None,
        dest="connect_timeout",
        metavar="SECONDS",
        help="Connect timeout (0 = no limit)",
    )
    request_parser.add_argument(
        "--timeout",
        type=int,
        default=None,
        metavar="SECONDS",
        help="Total transfer timeout (0 = no limit)",
    )
    request_parser.add_argument(
        "--max-redirects",
        type=int,
        default=None,
        dest="max_redirects",
        metavar="N",
        help="Redirect limit (0 = no redirects, negative = unlimited)",
    )
    request_parser.add_argument(
        "--max-send-speed",
        type=int,
        default=None,
        dest="max_send_speed",
        metavar="BYTES_PER_SEC",
        help="Upload speed cap (0 = unlimited)",
    )
    request_parser.add_argument(
        "--max-recv-speed",
        type=int,
        default=None,
        dest="max_recv_speed",
        metavar="BYTES_PER_SEC",
        help="Download speed cap (0 = unlimited)",
    )
    request_parser.add_argument(
        "--wait",
        type=float,
        default=None,
        metavar="SECONDS",
        help="Give up waiting for the result after this long (default: wait indefinitely)",
    )
    request_parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to configuration file (YAML)",
    )

    # Show-config subcommand
    show_config_parser = subparsers.add_parser(
        "show-config",
        help="Print the effective configuration as JSON",
    )
    show_config_parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to configuration file (YAML)",
    )

    return parser


def parse_request_args(namespace: argparse.Namespace) -> RequestArgs:
    """Convert parsed namespace to RequestArgs dataclass."""
    return RequestArgs(
        url=namespace.url,
        method=namespace.method,
        json_body=namespace.json_body,
        query=namespace.query or [],
        form=namespace.form or [],
        headers=namespace.headers or [],
        basic_auth=namespace.basic_auth,
        download=namespace.download,
        upload=namespace.upload,
        config=namespace.config,
        connect_timeout=namespace.connect_timeout,
        timeout=namespace.timeout,
        max_redirects=namespace.max_redirects,
        max_send_speed=namespace.max_send_speed,
        max_recv_speed=namespace.max_recv_speed,
        wait=namespace.wait,
        verbose=namespace.verbose,
    )


def parse_show_config_args(namespace: argparse.Namespace) -> ShowConfigArgs:
    """Convert parsed namespace to ShowConfigArgs dataclass."""
    return ShowConfigArgs(config=namespace.config, verbose=namespace.verbose)


def parse_args(args: list[str] | None = None) -> RequestArgs | ShowConfigArgs:
    """Parse command-line arguments and return typed args dataclass.

    Args:
        args: Command-line arguments to parse. If None, uses sys.argv[1:].

    Returns:
        RequestArgs or ShowConfigArgs depending on the subcommand.

    Raises:
        SystemExit: If arguments are invalid (argparse behavior).
    """
    parser = build_parser()
    namespace = parser.parse_args(args)

    if namespace.command == "request":
        return parse_request_args(namespace)
    elif namespace.command == "show-config":
        return parse_show_config_args(namespace)
    else:
        # Should not happen with required=True on subparsers
        parser.error(f"Unknown command: {namespace.command}")


def main() -> int:
    """Main entry point."""
    try:
        parsed = parse_args()
        logging.basicConfig(
            level=logging.DEBUG if parsed.verbose else logging.WARNING,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )

        if isinstance(parsed, RequestArgs):
            return run_request(parsed)
        else:
            return run_show_config(parsed)

    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return 1


def apply_request_args(request: RequestConfig, args: RequestArgs) -> None:
    """Copy parameters, headers, auth and explicit settings onto a RequestConfig."""
    for name, value in args.query:
        request.append_query_param(name, value)
    for name, value in args.form:
        request.append_form_param(name, value)
    for name, value in args.headers:
        request.set_header(name, value)

    if args.basic_auth is not None:
        request.set_basic_auth(*args.basic_auth)

    if args.connect_timeout is not None:
        request.set_connect_timeout(args.connect_timeout)
    if args.timeout is not None:
        request.set_timeout(args.timeout)
    if args.max_redirects is not None:
        request.set_max_redirects(args.max_redirects)
    if args.max_send_speed is not None:
        request.set_max_send_speed(args.max_send_speed)
    if args.max_recv_speed is not None:
        request.set_max_recv_speed(args.max_recv_speed)


def run_request(args: RequestArgs) -> int:
    """Run request mode.

    Returns 0 if a response was received (any status code), 1 otherwise.
    """
    from rest_dispatch.config_loader import ConfigError, load_config
    from rest_dispatch.dispatch_queue import DispatchQueue
    from rest_dispatch.executor import HTTPTransport
    from rest_dispatch.request import RequestConfig

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        return 1

    outcome = _Outcome()
    queue = DispatchQueue(HTTPTransport(), max_workers=config.queue.max_workers)
    queue.start()
    finished = False

    try:
        request = RequestConfig(args.url, queue, config.defaults)
        apply_request_args(request, args)

        if args.download is not None:
            request.download_file(args.download, outcome)
        elif args.upload is not None:
            request.upload_file(args.upload, outcome)
        elif args.form:
            request.post_form(outcome)
        else:
            request.perform(args.method, args.json_body, outcome)

        finished = queue.wait_idle(timeout=args.wait)
    finally:
        queue.shutdown(wait=finished)

    if not finished:
        print(f"Error: no result after {args.wait}s", file=sys.stderr)
        _abandon_transfer(1)

    result = outcome.results[0]
    if not result.ok:
        print(f"Error ({result.error_kind.value}): {result.error}", file=sys.stderr)
        return 1

    print(result.response.model_dump_json(indent=2))
    return 0


def _abandon_transfer(exit_code: int) -> None:
    """Exit now, without joining the worker still inside the transfer.

    Pool threads are joined at interpreter exit, so a normal return would
    block until the abandoned transfer finished or timed out.
    """
    sys.stdout.flush()
    sys.stderr.flush()
    os._exit(exit_code)


def run_show_config(args: ShowConfigArgs) -> int:
    """Run show-config mode."""
    from rest_dispatch.config_loader import ConfigError, load_config

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        return 1

    print(config.model_dump_json(indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
