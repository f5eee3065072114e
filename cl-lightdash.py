#!/usr/bin/env python3
"""
cl-lightdash: node analytics and fee/rebalance control for Core Lightning

Runs the same passes as the `lightdash` command line tool from inside
lightningd, using the plugin's own RPC connection:

- lightdash-fees        fee rate and HTLC bounds per channel
- lightdash-sling       sling-once pulls (or legacy sling-jobs)
- lightdash-htlc        max HTLC reduction from listpeerchannels
- lightdash-dashboard   static HTML dashboard
- lightdash-routes      routing centrality pages

Every pass loads a fresh snapshot when called; nothing runs on a timer.
Actions are only logged unless the matching execute option is true.

Dependencies:
- pyln-client: Core Lightning plugin framework
- sling plugin: executes the rebalances planned by lightdash-sling
"""

import os
from typing import Any, Dict, List, Optional

from pyln.client import Plugin

from lightdash.config import Config
from lightdash.dashboard import Dashboard, load_availability, write_routes_page
from lightdash.executor import ActionExecutor
from lightdash.fee_controller import FeeController
from lightdash.htlc import HtlcMaxAdjuster
from lightdash.node import SnapshotLoadError
from lightdash.rebalancer import SlingPlanner
from lightdash.routes import CentralityAnalyzer, RouteOracle
from lightdash.store import Store


plugin = Plugin()

config: Optional[Config] = None
config_errors: List[str] = []


# =============================================================================
# PLUGIN OPTIONS
# =============================================================================

plugin.add_option(
    name='lightdash-execute-setchannel',
    default='false',
    description='Apply setchannel actions instead of only logging them (default: false)'
)

plugin.add_option(
    name='lightdash-execute-sling',
    default='false',
    description='Start sling rebalances instead of only logging them (default: false)'
)

plugin.add_option(
    name='lightdash-output-dir',
    default='~/.lightning/lightdash',
    description='Directory for dashboard and routes pages'
)

plugin.add_option(
    name='lightdash-ppm-min',
    default='10',
    description='Lower bound of the fee rate set by lightdash-fees (default: 10)'
)

plugin.add_option(
    name='lightdash-ppm-max',
    default='5000',
    description='Upper bound of the fee rate set by lightdash-fees (default: 5000)'
)

plugin.add_option(
    name='lightdash-source-ppm-max',
    default='300',
    description='Sling candidates must charge less than this fee rate (default: 300)'
)

plugin.add_option(
    name='lightdash-sling-amount',
    default='100000',
    description='Amount in sats for each sling-once pull (default: 100,000)'
)


@plugin.init()
def init(options: Dict[str, Any], configuration: Dict[str, Any], plugin: Plugin, **kwargs):
    """Build the configuration from the plugin options."""
    global config, config_errors

    plugin.log("Initializing cl-lightdash plugin...")
    config, config_errors = Config.from_plugin_options(options)
    for error in config_errors:
        plugin.log(f"Invalid configuration: {error}", level='error')
    if config_errors:
        plugin.log("Every lightdash method refuses to run until the options are fixed",
                   level='error')

    plugin.log(f"Configuration loaded: execute_setchannel={config.execute_setchannel}, "
               f"execute_sling={config.execute_sling}")


def _config_error() -> Optional[Dict[str, Any]]:
    if config_errors:
        return {"error": "invalid configuration: " + "; ".join(config_errors)}
    return None


def _output_dir(output_dir: Optional[str]) -> str:
    return os.path.expanduser(output_dir or plugin.get_option('lightdash-output-dir'))


# =============================================================================
# RPC METHODS
# =============================================================================

@plugin.method("lightdash-fees")
def lightdash_fees(plugin: Plugin) -> Dict[str, Any]:
    """
    Adjust fee rate and HTLC bounds of every normal channel.

    Usage: lightning-cli lightdash-fees
    """
    error = _config_error()
    if error:
        return error
    try:
        store = Store.load(plugin, config)
    except SnapshotLoadError as e:
        return {"error": str(e)}
    return FeeController(plugin, config, store, ActionExecutor(plugin, config)).run()


@plugin.method("lightdash-sling")
def lightdash_sling(plugin: Plugin, jobs: bool = False) -> Dict[str, Any]:
    """
    Plan sling rebalances, sling-once pulls by default.

    Usage: lightning-cli lightdash-sling [jobs]
    """
    error = _config_error()
    if error:
        return error
    try:
        store = Store.load(plugin, config)
    except SnapshotLoadError as e:
        return {"error": str(e)}
    return SlingPlanner(plugin, config, store, ActionExecutor(plugin, config)).run(jobs=bool(jobs))


@plugin.method("lightdash-htlc")
def lightdash_htlc(plugin: Plugin) -> Dict[str, Any]:
    """
    Lower max HTLC of channels whose local balance is below it.

    Usage: lightning-cli lightdash-htlc
    """
    error = _config_error()
    if error:
        return error
    try:
        return HtlcMaxAdjuster(plugin, ActionExecutor(plugin, config)).run()
    except SnapshotLoadError as e:
        return {"error": str(e)}


@plugin.method("lightdash-dashboard")
def lightdash_dashboard(plugin: Plugin, output_dir: Optional[str] = None,
                        min_channels: Optional[int] = None,
                        availdb: Optional[str] = None) -> Dict[str, Any]:
    """
    Write the static HTML dashboard.

    Usage: lightning-cli lightdash-dashboard [output_dir] [min_channels] [availdb]
    """
    error = _config_error()
    if error:
        return error
    directory = _output_dir(output_dir)
    try:
        availability = load_availability(os.path.expanduser(availdb), plugin) if availdb else None
        store = Store.load(plugin, config)
    except SnapshotLoadError as e:
        return {"error": str(e)}
    pages = Dashboard(plugin, config, store, directory, availability=availability,
                      min_channels=int(min_channels) if min_channels else None).generate()
    return {"output_dir": directory, "pages": len(pages)}


@plugin.method("lightdash-routes")
def lightdash_routes(plugin: Plugin, output_dir: Optional[str] = None,
                     amount_sat: Optional[int] = None) -> Dict[str, Any]:
    """
    Write routing centrality pages for one or every configured amount.

    Usage: lightning-cli lightdash-routes [output_dir] [amount_sat]
    """
    error = _config_error()
    if error:
        return error
    directory = _output_dir(output_dir)
    try:
        store = Store.load(plugin, config)
    except SnapshotLoadError as e:
        return {"error": str(e)}

    analyzer = CentralityAnalyzer(plugin, store, RouteOracle(plugin, config.route_riskfactor))
    amounts = [int(amount_sat)] if amount_sat else config.route_amounts_sat
    summaries = []
    for amount in amounts:
        entries, summary = analyzer.analyze(amount * 1000)
        write_routes_page(directory, entries, summary, store.now)
        summaries.append({**summary.to_dict(), "top": [e.to_dict() for e in entries[:10]]})
    return {"output_dir": directory, "routes": summaries}


# =============================================================================
# ENTRY POINT
# =============================================================================

if __name__ == "__main__":
    plugin.run()
