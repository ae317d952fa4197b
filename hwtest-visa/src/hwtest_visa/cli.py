"""Command-line interface for hwtest-visa.

Provides quick instrument discovery and one-off queries.

Usage:
    # List instruments
    hwtest-visa list
    hwtest-visa list --query "USB?*::INSTR"

    # Send a query and print the response
    hwtest-visa query "TCPIP0::192.168.1.50::5025::SOCKET" "*IDN?"

    # Find the baud rate of a serial instrument
    hwtest-visa probe /dev/ttyUSB0
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from hwtest_visa.config import OpenOptions, VisaConfig, load_config
from hwtest_visa.errors import VisaError
from hwtest_visa.manager import ResourceManager
from hwtest_visa.resource_string import DEFAULT_QUERY
from hwtest_visa.transports.serial import DEFAULT_PROBE_BAUD_RATES, probe_serial_port


def setup_logging(debug: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _load(args: argparse.Namespace) -> VisaConfig:
    return load_config(args.config) if args.config else VisaConfig()


async def _list(query: str, config: VisaConfig) -> int:
    manager = ResourceManager(default_options=config.defaults)
    infos = await manager.list_resources_info(query)
    if not infos:
        print("No resources found.")
        return 0
    for info in infos:
        alias = f"  ({info.alias})" if info.alias else ""
        print(f"{info.resource_name}{alias}")
    return 0


def cmd_list(args: argparse.Namespace) -> int:
    """List resources matching a query pattern."""
    try:
        return asyncio.run(_list(args.query, _load(args)))
    except (VisaError, OSError) as exc:
        print(f"Error: {exc}")
        return 1


async def _query(resource: str, command: str, options: OpenOptions) -> str:
    async with ResourceManager() as manager:
        instrument = await manager.open_resource(resource, options)
        return await instrument.query(command)


def cmd_query(args: argparse.Namespace) -> int:
    """Send one query and print the response."""
    try:
        config = _load(args)
        options = config.options_for(args.resource)
        if args.timeout is not None:
            options = options.merged({"timeout": args.timeout})
        response = asyncio.run(_query(args.resource, args.command, options))
    except (VisaError, OSError) as exc:
        print(f"Error: {exc}")
        return 1
    print(response)
    return 0


def cmd_probe(args: argparse.Namespace) -> int:
    """Probe a serial port for a responding instrument."""
    print(f"Probing {args.port} at {', '.join(str(rate) for rate in args.baud_rates)} baud...")
    try:
        result = asyncio.run(
            probe_serial_port(
                args.port,
                baud_rates=args.baud_rates,
                probe_command=args.command,
                probe_timeout=args.timeout,
            )
        )
    except (VisaError, OSError) as exc:
        print(f"Error: {exc}")
        return 1
    if result is None:
        print("No response at any baud rate")
        return 1
    print(f"Baud rate: {result.baud_rate}")
    print(f"Response:  {result.response}")
    return 0


def parse_baud_rates(value: str) -> list[int]:
    """Parse comma-separated baud rates."""
    return [int(v.strip()) for v in value.split(",")]


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="hwtest-visa instrument communication CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--config", "-c", help="YAML configuration file")

    subparsers = parser.add_subparsers(dest="command_name", help="Command to run")

    # list command
    list_parser = subparsers.add_parser("list", help="List available resources")
    list_parser.add_argument(
        "--query", "-q", default=DEFAULT_QUERY,
        help=f"VISA resource pattern (default: {DEFAULT_QUERY})"
    )

    # query command
    query_parser = subparsers.add_parser("query", help="Send a query and print the response")
    query_parser.add_argument("resource", help="Resource string")
    query_parser.add_argument("command", help="Command to send, e.g. '*IDN?'")
    query_parser.add_argument(
        "--timeout", "-t", type=float,
        help="I/O timeout in seconds (default: from config, else 2.0)"
    )

    # probe command
    probe_parser = subparsers.add_parser("probe", help="Find the baud rate of a serial instrument")
    probe_parser.add_argument("port", help="Serial port, e.g. /dev/ttyUSB0 or COM3")
    probe_parser.add_argument(
        "--baud-rates", type=parse_baud_rates, default=list(DEFAULT_PROBE_BAUD_RATES),
        help="Baud rates to try, comma-separated (default: 115200,9600,57600,38400,19200)"
    )
    probe_parser.add_argument(
        "--command", default="*IDN?",
        help="Probe command (default: *IDN?)"
    )
    probe_parser.add_argument(
        "--timeout", "-t", type=float, default=0.5,
        help="Seconds to wait for a response at each rate (default: 0.5)"
    )

    args = parser.parse_args()

    if args.command_name is None:
        parser.print_help()
        return 1

    setup_logging(args.debug)

    if args.command_name == "list":
        return cmd_list(args)
    elif args.command_name == "query":
        return cmd_query(args)
    elif args.command_name == "probe":
        return cmd_probe(args)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
