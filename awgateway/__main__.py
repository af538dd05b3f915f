# awgateway Module - Command Line
# -*- coding: utf-8 -*-
"""
 Python module to bridge Ecowitt / Ambient Weather gateways to MQTT

 Commands:
    python -m awgateway run                         # Run the bridge service
    python -m awgateway live -host 192.168.1.20     # Print one live data frame
    python -m awgateway version                     # Print version

 The run command reads its settings from AW_* environment variables, a .env
 file and an optional TOML settings file. SIGINT/SIGTERM stop the service,
 SIGHUP reloads the sensor definition files.
"""

import argparse
import asyncio
import json
import signal
import sys

import dotenv

# Modules
from awgateway import set_debug, setup_logging, version
from awgateway.exceptions import AwGatewayError, InvalidConfiguration
from awgateway.gateway import DEFAULT_PORT

port = DEFAULT_PORT


async def run_bridge(settings):
    """Run the gateway manager until SIGINT or SIGTERM."""
    from awgateway.manager import GatewayManager

    manager = GatewayManager(settings)
    await manager.initialize()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, manager.stop)
    if hasattr(signal, "SIGHUP"):
        loop.add_signal_handler(signal.SIGHUP, manager.reload_sensors)
    try:
        await manager.run()
    finally:
        await manager.shutdown()


# Setup parser and groups
p = argparse.ArgumentParser(prog="awgateway", description=f"awgateway Gateway to MQTT Bridge v{version}")
subparsers = p.add_subparsers(dest="command", title='commands (run <command> -h to see usage information)',
                              required=True)

run_args = subparsers.add_parser("run", help='Run the gateway to MQTT bridge')

live_args = subparsers.add_parser("live", help='Print the live data of one gateway')
live_args.add_argument("-host", type=str, required=True, help="IP address of the gateway")
live_args.add_argument("-port", type=int, default=port, help=f"Gateway TCP port [Default={port}]")
live_args.add_argument("-json", action="store_true", default=False, help="Print JSON instead of a table")

version_args = subparsers.add_parser("version", help='Print version information')

# Add a global debug flag
p.add_argument("-debug", action="store_true", default=False, help="Enable debug output")

if len(sys.argv) == 1:
    p.print_help(sys.stderr)
    sys.exit(1)

# parse args
args = p.parse_args()
command = args.command

# Set Debug Mode
if args.debug:
    set_debug(True)

# Run Bridge
if command == 'run':
    from awgateway.config import load_settings

    dotenv.load_dotenv()
    try:
        settings = load_settings()
    except InvalidConfiguration as e:
        print(f"ERROR: {e}")
        sys.exit(1)
    setup_logging("debug" if args.debug or settings.debug else settings.log_level, settings.log_dir,
                  settings.log_files, settings.log_rotate_size)
    try:
        asyncio.run(run_bridge(settings))
    except InvalidConfiguration as e:
        print(f"ERROR: {e}")
        sys.exit(1)

# Live Data
elif command == 'live':
    from awgateway.gateway import GatewayClient

    client = GatewayClient(args.host, port=args.port)
    try:
        records = client.live_data()
    except AwGatewayError as e:
        print(f"ERROR: {e}")
        sys.exit(1)
    output = {record.key: record.value for record in records}
    if args.json:
        print(json.dumps(output, indent=2))
    else:
        print(f"awgateway [{version}] - Live data from {args.host}:{args.port}\n")
        for record in records:
            print("  {:<22} 0x{:02X}  {}".format(record.key, record.type_code, record.value))
        print("")

# Print Version
elif command == 'version':
    print("awgateway [%s]" % version)
# Print Usage
else:
    p.print_help()
