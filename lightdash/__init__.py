"""
cl-lightdash package

Analytics and fee/rebalance control for a Core Lightning routing node:
- node: plugin-shaped handle and RPC back ends (socket, CLI, fixtures)
- models: typed views over the node's JSON documents
- datastore: lightningd datastore access under the `lightdash` namespace
- store: one-shot snapshot ingest and query surface
- metrics: per-channel counters, yield and fee statistics
- fee_controller: fee rate and HTLC bound control law
- rebalancer: sling-once / sling-job planning
- executor: gated execution of planned actions
- routes: routing centrality over trial routes
- htlc: max HTLC reduction from listpeerchannels
- dashboard: static HTML pages
- config: configuration and constants
"""

__version__ = "0.3.0"

from .config import Config
from .executor import Action, ActionExecutor, ActionResult
from .fee_controller import FeeController, FeeDecision, largest_power_of_two_leq
from .node import SnapshotLoadError, SnapshotParseError, StandalonePlugin
from .rebalancer import SlingPlanner
from .store import Store

__all__ = [
    'Config',
    'Action',
    'ActionExecutor',
    'ActionResult',
    'FeeController',
    'FeeDecision',
    'largest_power_of_two_leq',
    'SnapshotLoadError',
    'SnapshotParseError',
    'StandalonePlugin',
    'SlingPlanner',
    'Store',
]
