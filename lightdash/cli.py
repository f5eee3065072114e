"""
Command line runner for cl-lightdash

    lightdash [--fixtures DIR | --rpc-file PATH | --cli lightning-cli] \\
              [--log-level INFO] [--log-file PATH] <command> ...

Commands:
    dashboard <output_dir> [--min-channels N] [--availdb PATH]
    fees
    sling [--jobs]
    routes <output_dir> [--amount SAT ...]
    htlc

Every command loads one Store (htlc reads listpeerchannels directly) and
runs one pass. Actions are only logged unless EXECUTE_SETCHANNEL or
EXECUTE_SLING is present in the environment.
"""

import argparse
import logging
import sys
from typing import List, Optional

from pyln.client import LightningRpc

from . import __version__
from .config import Config
from .dashboard import Dashboard, load_availability, write_routes_page
from .executor import ActionExecutor
from .fee_controller import FeeController
from .htlc import HtlcMaxAdjuster
from .node import CliRpc, FixtureRpc, SnapshotLoadError, StandalonePlugin
from .rebalancer import SlingPlanner
from .routes import CentralityAnalyzer, RouteOracle
from .store import Store


LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(name)s]: %(message)s"

logger = logging.getLogger("lightdash")


def _get_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lightdash",
        description="Fee, HTLC and rebalance control plus a static dashboard for a Core Lightning node",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    source = parser.add_mutually_exclusive_group()
    source.add_argument("--fixtures", metavar="DIR",
                        help="Answer read-only calls from JSON dumps in DIR (optionally .gz)")
    source.add_argument("--rpc-file", metavar="PATH",
                        help="Talk to lightningd over its unix socket")
    parser.add_argument("--cli", default="lightning-cli",
                        help="Node control CLI used when no socket is given (default: lightning-cli)")
    parser.add_argument("--cli-arg", action="append", default=[], metavar="ARG",
                        help="Extra argument passed to the CLI before the method (repeatable)")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Log level (default: INFO)")
    parser.add_argument("--log-file", metavar="PATH", help="Also write the log to PATH")

    sub = parser.add_subparsers(dest="command", required=True)

    dashboard = sub.add_parser("dashboard", help="Write the static HTML dashboard")
    dashboard.add_argument("output_dir")
    dashboard.add_argument("--min-channels", type=int, default=None,
                           help="Also write node pages for nodes with at least N channels")
    dashboard.add_argument("--availdb", metavar="PATH",
                           help="JSON object mapping node id to availability in [0, 1]")

    sub.add_parser("fees", help="Adjust fee rate and HTLC bounds of every channel")

    sling = sub.add_parser("sling", help="Plan sling rebalances")
    sling.add_argument("--jobs", action="store_true",
                       help="Use persistent sling-job instead of sling-once")

    routes = sub.add_parser("routes", help="Write routing centrality pages")
    routes.add_argument("output_dir")
    routes.add_argument("--amount", type=int, action="append", metavar="SAT",
                        help="Payment amount in sats (repeatable, default: 1k..10M)")

    sub.add_parser("htlc", help="Lower max HTLC of channels below their local balance")
    return parser


def setup_logging(level: str, log_file: Optional[str] = None) -> None:
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(level=getattr(logging, level), format=LOG_FORMAT, handlers=handlers)


def build_plugin(args: argparse.Namespace) -> StandalonePlugin:
    if args.fixtures:
        rpc = FixtureRpc(args.fixtures)
    elif args.rpc_file:
        rpc = LightningRpc(args.rpc_file)
    else:
        rpc = CliRpc(args.cli, args.cli_arg)
    return StandalonePlugin(rpc, logger)


def run_command(args: argparse.Namespace, plugin, config: Config) -> None:
    executor = ActionExecutor(plugin, config)

    if args.command == "htlc":
        HtlcMaxAdjuster(plugin, executor).run()
        return

    # The uptime file is read before touching the node so a typo fails fast
    availability = None
    if args.command == "dashboard" and args.availdb:
        availability = load_availability(args.availdb, plugin)

    store = Store.load(plugin, config)

    if args.command == "fees":
        FeeController(plugin, config, store, executor).run()
    elif args.command == "sling":
        SlingPlanner(plugin, config, store, executor).run(jobs=args.jobs)
    elif args.command == "dashboard":
        Dashboard(plugin, config, store, args.output_dir,
                  availability=availability, min_channels=args.min_channels).generate()
    elif args.command == "routes":
        oracle = RouteOracle(plugin, config.route_riskfactor)
        analyzer = CentralityAnalyzer(plugin, store, oracle)
        for amount_sat in args.amount or config.route_amounts_sat:
            entries, summary = analyzer.analyze(amount_sat * 1000)
            path = write_routes_page(args.output_dir, entries, summary, store.now)
            plugin.log(f"Routes page generated: {path}")


def main(argv: Optional[List[str]] = None) -> int:
    args = _get_parser().parse_args(argv)
    setup_logging(args.log_level, args.log_file)

    config = Config.from_env()
    errors = config.validate()
    if errors:
        for error in errors:
            logger.error(f"Invalid configuration: {error}")
        return 2

    plugin = build_plugin(args)
    logger.info(
        f"lightdash {__version__} {args.command} "
        f"(execute_setchannel={config.execute_setchannel}, execute_sling={config.execute_sling})"
    )
    try:
        run_command(args, plugin, config)
    except SnapshotLoadError as e:
        logger.error(str(e))
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
