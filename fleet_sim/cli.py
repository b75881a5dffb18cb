"""
Fleet simulator command line.

Usage examples:
  fleet-sim --topology basic_setup --scenario network_outage --duration 60
  fleet-sim --topology full_yacht --broker mqtt.local --time-scale 0.1
  fleet-sim --list-scenarios
"""

import argparse
import asyncio
import json
import sys
from typing import List, Optional

from .config import FleetSettings
from .exceptions import FleetSimError
from .logging_config import configure_logging
from .manager import FleetManager
from .scenarios import list_predefined_scenarios

TOPOLOGIES = ["basic_setup", "full_yacht", "stress_test"]


def print_scenarios() -> None:
    for scenario in list_predefined_scenarios():
        print(f"{scenario.id:24} {scenario.failure_kind.value:26} {scenario.description}")


async def run_fleet(args: argparse.Namespace, settings: FleetSettings) -> None:
    async with FleetManager(settings) as fleet:
        devices = await fleet.create_test_scenario(args.topology)
        print(f"[fleet-sim] created {len(devices)} devices ({args.topology}) on {settings.broker_url}")

        if args.scenario:
            handles = fleet.execute_predefined_scenario(args.scenario, args.targets or None)
            print(f"[fleet-sim] scenario {args.scenario}: {len(handles)} active effects")

        print("[fleet-sim] running. Ctrl+C to stop.")
        loop = asyncio.get_running_loop()
        deadline = loop.time() + args.duration if args.duration else None
        while deadline is None or loop.time() < deadline:
            await asyncio.sleep(args.interval)
            print(f"[fleet-sim] {json.dumps(fleet.get_statistics())}")
        print("[fleet-sim] shutting down...")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Virtual IoT device fleet with failure injection")
    p.add_argument("--topology", choices=TOPOLOGIES, default="basic_setup", help="Canned device topology")
    p.add_argument("--scenario", type=str, help="Predefined failure scenario to run after start-up")
    p.add_argument(
        "--target",
        dest="targets",
        action="append",
        default=[],
        help="Restrict the scenario to a device id (repeatable)",
    )
    p.add_argument("--duration", type=float, default=0.0, help="Seconds to run; 0 runs until interrupted")
    p.add_argument("--interval", type=float, default=5.0, help="Seconds between statistics lines")
    p.add_argument("--broker", type=str, help="MQTT broker host (overrides FLEETSIM_MQTT_BROKER)")
    p.add_argument("--port", type=int, help="MQTT broker port")
    p.add_argument("--time-scale", type=float, help="Multiplier applied to every simulated delay")
    p.add_argument("--log-level", type=str, help="Logging level")
    p.add_argument("--console-logs", action="store_true", help="Human readable logs instead of JSON")
    p.add_argument("--list-scenarios", action="store_true", help="List predefined failure scenarios and exit")
    return p


def settings_from_args(args: argparse.Namespace) -> FleetSettings:
    overrides = {
        "mqtt_broker": args.broker,
        "mqtt_port": args.port,
        "time_scale": args.time_scale,
        "log_level": args.log_level,
    }
    settings = FleetSettings(**{k: v for k, v in overrides.items() if v is not None})
    if args.console_logs:
        settings.log_json = False
    return settings


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.list_scenarios:
        print_scenarios()
        return 0

    settings = settings_from_args(args)
    configure_logging(settings.service_name, settings.log_level, settings.log_json, settings.namespace)

    try:
        asyncio.run(run_fleet(args, settings))
    except KeyboardInterrupt:
        print("[fleet-sim] interrupted")
    except FleetSimError as e:
        print(f"[fleet-sim] {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
