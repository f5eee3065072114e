"""
Routing centrality for cl-lightdash

Asks the node for a trial route to every announced node with at least
two gossip edges and counts how often each intermediate hop that is not
already our peer shows up. Nodes seen more than twice are candidate
relay partners: opening a channel to them would shorten many routes.

Route queries are strictly sequential and memoised per
(destination, amount) for the lifetime of the RouteOracle, so two
analyses over the same snapshot and oracle give the same ranking.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from pyln.client import RpcError

from .models import RouteHop


# A relay must appear in more than this many routes to be reported
MIN_APPEARANCES = 2
MIN_NODE_CHANNELS = 2


@dataclass
class RouteEntry:
    """One candidate relay with its outgoing fee profile."""
    node_id: str
    alias: str
    appearances: int
    avg_fee: float
    fee_diversity: float
    channel_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "alias": self.alias,
            "appearances": self.appearances,
            "avg_fee": round(self.avg_fee, 1),
            "fee_diversity": round(self.fee_diversity, 3),
            "channel_count": self.channel_count,
        }


@dataclass
class RoutesSummary:
    amount_msat: int
    scanned_nodes: int
    evaluated_routes: int
    candidate_nodes: int
    average_hops: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "amount_sat": self.amount_msat // 1000,
            "scanned_nodes": self.scanned_nodes,
            "evaluated_routes": self.evaluated_routes,
            "candidate_nodes": self.candidate_nodes,
            "average_hops": round(self.average_hops, 2),
        }


class RouteOracle:
    """
    Memoising wrapper over the `getroute` RPC.

    get_route returns None when the node finds no route or answers with
    something that is not a route.
    """

    def __init__(self, plugin, riskfactor: int = 10):
        self.plugin = plugin
        self.riskfactor = riskfactor
        self._cache: Dict[Tuple[str, int], Optional[List[RouteHop]]] = {}
        self.queries = 0

    def get_route(self, destination: str, amount_msat: int) -> Optional[List[RouteHop]]:
        key = (destination, amount_msat)
        if key not in self._cache:
            self._cache[key] = self._query(destination, amount_msat)
        return self._cache[key]

    def _query(self, destination: str, amount_msat: int) -> Optional[List[RouteHop]]:
        self.queries += 1
        try:
            result = self.plugin.rpc.call("getroute", {
                "id": destination,
                "amount_msat": amount_msat,
                "riskfactor": self.riskfactor,
            })
        except RpcError as e:
            self.plugin.log(f"No route to {destination}: {e}", level='debug')
            return None

        try:
            hops = [RouteHop.from_dict(h) for h in result["route"]]
        except (KeyError, TypeError, ValueError) as e:
            self.plugin.log(f"Unexpected getroute answer for {destination}: {e}", level='warn')
            return None
        return hops or None


class CentralityAnalyzer:
    """Counts third-party relays over trial routes to the whole network."""

    def __init__(self, plugin, store, oracle: RouteOracle):
        self.plugin = plugin
        self.store = store
        self.oracle = oracle

    def analyze(self, amount_msat: int) -> Tuple[List[RouteEntry], RoutesSummary]:
        chan_meta = self.store.chan_meta_per_node()
        peers = self.store.peers_ids()
        node_ids = self.store.node_ids_with_aliases()

        counters: Dict[str, int] = {}
        hop_sum = 0
        evaluated = 0

        for node_id in node_ids:
            meta = chan_meta.get(node_id)
            if meta is None or meta.count < MIN_NODE_CHANNELS:
                continue
            route = self.oracle.get_route(node_id, amount_msat)
            if route is None:
                continue
            hop_sum += len(route)
            evaluated += 1
            # last hop is the destination itself
            for hop in route[:-1]:
                if hop.id not in peers:
                    counters[hop.id] = counters.get(hop.id, 0) + 1

        ranked = sorted(
            ((node_id, count) for node_id, count in counters.items() if count > MIN_APPEARANCES),
            key=lambda item: (-item[1], item[0]),
        )

        entries = []
        for node_id, count in ranked:
            meta = chan_meta.get(node_id)
            if meta is None:
                continue
            entries.append(RouteEntry(
                node_id=node_id,
                alias=self.store.get_node_alias(node_id),
                appearances=count,
                avg_fee=meta.avg_fee,
                fee_diversity=meta.fee_diversity,
                channel_count=meta.count,
            ))

        summary = RoutesSummary(
            amount_msat=amount_msat,
            scanned_nodes=len(node_ids),
            evaluated_routes=evaluated,
            candidate_nodes=len(entries),
            average_hops=hop_sum / evaluated if evaluated else 0.0,
        )
        self.plugin.log(
            f"Routes {amount_msat // 1000} sat: {evaluated} routes over {len(node_ids)} nodes, "
            f"{len(entries)} candidate relays"
        )
        return entries, summary
