"""Command-line interface for the MobiUrban web client."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Sequence

from mobiurban.backend import BackendClient, BackendError
from mobiurban.config import AppSettings, load_settings
from mobiurban.drivers import fetch_online_drivers
from mobiurban.models import drivers_count_label

logger = logging.getLogger("mobiurban.main")


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="MobiUrban ride-hailing web client")
    parser.add_argument(
        "--config",
        default=None,
        help="Path to a YAML configuration file (default: config/mobiurban.yaml)",
    )
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve")

    serve_parser = subparsers.add_parser("serve", help="Start the web client")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Bind address for the web client")
    serve_parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port for the web client (default: 8000)",
    )
    serve_parser.add_argument(
        "--ssl-certfile",
        default=None,
        help="Path to the TLS certificate chain in PEM format",
    )
    serve_parser.add_argument(
        "--ssl-keyfile",
        default=None,
        help="Path to the TLS private key in PEM format",
    )

    subparsers.add_parser("drivers", help="List the drivers currently online")

    args_list = list(argv) if argv is not None else sys.argv[1:]
    known_commands = {"serve", "drivers"}

    global_args: list[str] = []
    if len(args_list) >= 2 and args_list[0] == "--config":
        global_args, args_list = args_list[:2], args_list[2:]

    if not args_list:
        args_list = ["serve"]
    else:
        first = args_list[0]
        if first in ("-h", "--help"):
            return parser.parse_args([*global_args, *args_list])
        if first not in known_commands:
            if any(flag in args_list for flag in ("-h", "--help")):
                return parser.parse_args([*global_args, *args_list])
            args_list = ["serve", *args_list]

    return parser.parse_args([*global_args, *args_list])


def _load_settings(config: str | None) -> AppSettings:
    path = Path(config).expanduser() if config else None
    try:
        return load_settings(path)
    except ValueError as exc:
        raise SystemExit(f"Invalid configuration: {exc}") from exc


def _serve(
    settings: AppSettings,
    *,
    host: str,
    port: int,
    ssl_certfile: str | None,
    ssl_keyfile: str | None,
) -> None:
    from mobiurban.web import create_app
    import uvicorn

    if bool(ssl_certfile) ^ bool(ssl_keyfile):
        raise SystemExit("Both --ssl-certfile and --ssl-keyfile must be provided together.")

    protocol = "https" if ssl_certfile and ssl_keyfile else "http"
    logger.info("Starting MobiUrban on %s://%s:%s", protocol, host, port)
    logger.info("Using backend at %s", settings.backend.url)

    app = create_app(settings=settings)
    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level=settings.log_level.lower(),
        ssl_certfile=ssl_certfile,
        ssl_keyfile=ssl_keyfile,
    )


def _list_drivers(settings: AppSettings) -> int:
    with BackendClient(settings.backend.url, settings.backend.anon_key) as client:
        try:
            drivers = fetch_online_drivers(client)
        except BackendError as exc:
            print(f"Failed to load online drivers: {exc}")
            return 1

    print(drivers_count_label(len(drivers)))
    if not drivers:
        return 0

    print(f"{'Name':<24}  {'Vehicle':<32}  {'Rating':>6}  {'Price':>14}  Phone")
    print("-" * 96)
    for driver in drivers:
        print(
            f"{driver.name:<24}  {driver.vehicle_summary:<32}  "
            f"{driver.rating_label:>6}  {driver.price_label:>14}  {driver.phone or '-'}"
        )
    return 0


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point for CLI usage."""

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")

    args = _parse_args(argv)
    settings = _load_settings(args.config)
    logging.getLogger().setLevel(settings.log_level)

    if args.command == "serve":
        _serve(
            settings,
            host=args.host,
            port=args.port,
            ssl_certfile=args.ssl_certfile,
            ssl_keyfile=args.ssl_keyfile,
        )
    elif args.command == "drivers":
        raise SystemExit(_list_drivers(settings))


if __name__ == "__main__":
    main()
