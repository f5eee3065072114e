"""
Snapshot Store for cl-lightdash

Loads the node's documents once per invocation, indexes them and exposes
the query surface every pass (fees, sling, dashboard, routes) works from.

Documents (all fetched through plugin.rpc):
- getinfo             our id and the current block height
- listchannels        full gossip graph, two directed edges per channel
- listpeers           peers and (on older nodes) their channels
- listfunds           our channels with balances, plus on-chain outputs
- listforwards        forward history in every status
- listnodes           node announcements (aliases)
- listclosedchannels  historical channels

Two datastore namespaces are cached at load (peer notes and last
setchannel timestamps) and a `last_run` marker is written.

The snapshot time is captured once at load; every window used by the
queries is relative to it. The Store is read-only after construction.
"""

import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from pyln.client import RpcError

from .config import Config
from .datastore import (
    Datastore, DatastoreMode, LAST_RUN_KEY, LAST_SETCHANNEL_PREFIX,
    NAMESPACE, PEER_NOTE_PREFIX,
)
from .metrics import (
    ApyData, BLOCKS_PER_DAY, ChannelCounters, ChannelFee, ChannelMeta,
    DAY_SECONDS, HOUR_SECONDS, ForwardStatistics, Rebalance,
    build_channel_meta, compute_channel_counters, fee_distribution,
    fee_histogram, forward_statistics, forwards_by_weekday,
    is_reasonable_fee, mean_median, mean_variance, settled_frequency,
)
from .models import (
    CHANNELD_NORMAL, FORWARD_FAILED, FORWARD_LOCAL_FAILED,
    Channel, ClosedChannel, ClosedChannelInfo, Forward, Fund, Node,
    NodeInfo, Peer, SettledForward, block_from_scid, timestamp_to_datetime,
)
from .node import SnapshotLoadError, SnapshotParseError


SNAPSHOT_SOURCES = (
    "getinfo",
    "listchannels",
    "listpeers",
    "listfunds",
    "listforwards",
    "listnodes",
    "listclosedchannels",
)


@dataclass
class PeerFeeDistribution:
    """
    Capacity (sats) per fee bucket around one peer.

    outgoing: edges towards the peer (what others charge to reach it)
    incoming: edges from the peer (what the peer charges)
    """
    peer_id: str
    outgoing: List[int]
    incoming: List[int]


def _fetch(plugin, method: str) -> Dict[str, Any]:
    try:
        result = plugin.rpc.call(method)
    except (RpcError, OSError) as e:
        raise SnapshotLoadError(method, str(e))
    if not isinstance(result, dict):
        raise SnapshotParseError(method, f"expected a JSON object, got {type(result).__name__}")
    return result


def _parse(source: str, fn: Callable[[], Any]) -> Any:
    try:
        return fn()
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise SnapshotParseError(source, f"{type(e).__name__}: {e}")


def _convertible_forwards(plugin, forwards: List[Forward]) -> List[Forward]:
    """Forwards of any status whose timestamps map to a calendar instant."""
    kept = []
    for f in forwards:
        if timestamp_to_datetime(f.received_time) is None or (
                f.resolved_time is not None and timestamp_to_datetime(f.resolved_time) is None):
            plugin.log(f"Dropped {f.status} forward {f.in_channel}->{f.out_channel}: "
                       f"bad timestamp", level='warn')
            continue
        kept.append(f)
    return kept


class Store:
    """
    In-memory snapshot of node and network state.

    Build it with Store.load(plugin); the constructor takes already
    parsed documents so tests can assemble a Store directly.
    """

    def __init__(self, plugin, config: Config, info: NodeInfo,
                 channels: List[Channel], peers: List[Peer], funds: List[Fund],
                 forwards: List[Forward], nodes: List[Node],
                 closed_channels: List[ClosedChannel], now: float,
                 peer_notes: Optional[Dict[str, str]] = None,
                 setchannel_timestamps: Optional[Dict[str, int]] = None,
                 last_run: Optional[int] = None):
        self.plugin = plugin
        self.config = config
        self.info = info
        self.channels = channels
        self.peers = peers
        self.funds = funds
        self.forwards = _convertible_forwards(plugin, forwards)
        self.nodes = nodes
        self.closed_channels = closed_channels
        self.now = now
        self.peer_notes = dict(peer_notes or {})
        self.setchannel_timestamps = dict(setchannel_timestamps or {})
        self.last_run = last_run

        self._channels_by_key: Dict[Tuple[str, str], Channel] = {}
        self._channels_by_scid: Dict[str, List[Channel]] = defaultdict(list)
        for c in channels:
            self._channels_by_key[(c.short_channel_id, c.source)] = c
            self._channels_by_scid[c.short_channel_id].append(c)

        self._nodes_by_id: Dict[str, Node] = {n.nodeid: n for n in nodes}
        self._funds_by_scid: Dict[str, Fund] = {
            f.short_channel_id: f for f in funds if f.short_channel_id
        }

        settled = []
        dropped = 0
        for f in self.forwards:
            s = SettledForward.from_forward(f)
            if s is not None:
                settled.append(s)
            elif f.status == "settled":
                dropped += 1
        if dropped:
            plugin.log(f"Dropped {dropped} settled forwards with missing fields or bad timestamps",
                       level='warn')
        settled.sort(key=lambda s: s.resolved_time, reverse=True)
        self._settled: List[SettledForward] = settled

        self._counters: Optional[ChannelCounters] = None
        self._chan_meta_per_node: Optional[Dict[str, ChannelFee]] = None

    # =========================================================================
    # LOADING
    # =========================================================================

    @classmethod
    def load(cls, plugin, config: Optional[Config] = None,
             now: Optional[float] = None) -> "Store":
        """
        Fetch and parse every snapshot document.

        Raises:
            SnapshotLoadError: a document could not be fetched
            SnapshotParseError: a document did not match its declared shape
        """
        if config is None:
            config = Config()
        plugin.log("Fetching data from Lightning node...")
        docs = {source: _fetch(plugin, source) for source in SNAPSHOT_SOURCES}
        if now is None:
            now = time.time()

        info = _parse("getinfo", lambda: NodeInfo.from_dict(docs["getinfo"]))
        channels = _parse("listchannels", lambda: [
            Channel.from_dict(c) for c in docs["listchannels"]["channels"]])
        peers = _parse("listpeers", lambda: [
            Peer.from_dict(p) for p in docs["listpeers"]["peers"]])
        funds = _parse("listfunds", lambda: [
            Fund.from_dict(f) for f in docs["listfunds"]["channels"]])
        forwards = _parse("listforwards", lambda: [
            Forward.from_dict(f) for f in docs["listforwards"]["forwards"]])
        nodes = _parse("listnodes", lambda: [
            Node.from_dict(n) for n in docs["listnodes"]["nodes"]])
        closed = _parse("listclosedchannels", lambda: [
            ClosedChannel.from_dict(c) for c in docs["listclosedchannels"]["closedchannels"]])

        plugin.log(
            f"network channels:{len(channels)} nodes:{len(nodes)} peers:{len(peers)} "
            f"funds:{len(funds)} forwards:{len(forwards)} closed:{len(closed)}"
        )

        datastore = Datastore(plugin)
        peer_notes = datastore.load_map(PEER_NOTE_PREFIX)
        setchannel_timestamps = {}
        for scid, raw in datastore.load_map(LAST_SETCHANNEL_PREFIX).items():
            try:
                setchannel_timestamps[scid] = int(raw)
            except ValueError:
                plugin.log(f"Invalid setchannel timestamp for {scid}: {raw!r}", level='error')

        last_run = None
        raw_last_run = datastore.load_map([NAMESPACE]).get(LAST_RUN_KEY[-1])
        if raw_last_run is not None:
            try:
                last_run = int(raw_last_run)
            except ValueError:
                plugin.log(f"Invalid last_run marker: {raw_last_run!r}", level='error')

        try:
            datastore.put_string(LAST_RUN_KEY, str(int(now)), DatastoreMode.CREATE_OR_REPLACE)
        except (RpcError, OSError) as e:
            plugin.log(f"Failed to write last_run marker: {e}", level='warn')

        plugin.log("Data fetched successfully")
        return cls(
            plugin=plugin,
            config=config,
            info=info,
            channels=channels,
            peers=peers,
            funds=funds,
            forwards=forwards,
            nodes=nodes,
            closed_channels=closed,
            now=now,
            peer_notes=peer_notes,
            setchannel_timestamps=setchannel_timestamps,
            last_run=last_run,
        )

    # =========================================================================
    # GRAPH AND IDENTITY
    # =========================================================================

    @property
    def my_id(self) -> str:
        return self.info.id

    @property
    def current_block(self) -> int:
        return self.info.blockheight

    def get_channel(self, short_channel_id: str, source: str) -> Optional[Channel]:
        return self._channels_by_key.get((short_channel_id, source))

    def get_our_edge(self, short_channel_id: str) -> Optional[Channel]:
        return self.get_channel(short_channel_id, self.my_id)

    def get_their_edge(self, fund: Fund) -> Optional[Channel]:
        return self.get_channel(fund.scid, fund.peer_id)

    def channel_endpoints(self, short_channel_id: str) -> Optional[Tuple[str, str]]:
        """
        Sorted (node_0, node_1) pair of a bidirectional channel.

        None for monodirectional channels (only one edge announced).
        """
        edges = self._channels_by_scid.get(short_channel_id, [])
        if len(edges) != 2:
            return None
        node_0, node_1 = sorted({edges[0].source, edges[0].destination})
        return node_0, node_1

    def edges_from(self, node_id: str) -> List[Channel]:
        return [c for c in self.channels if c.source == node_id]

    def edges_to(self, node_id: str) -> List[Channel]:
        return [c for c in self.channels if c.destination == node_id]

    def get_node(self, node_id: str) -> Optional[Node]:
        return self._nodes_by_id.get(node_id)

    def get_node_alias(self, node_id: str) -> str:
        """Alias when announced, else `first8...last8` for a 66-char id, else the id."""
        node = self._nodes_by_id.get(node_id)
        if node is not None and node.alias:
            return node.alias
        if len(node_id) == 66:
            return f"{node_id[:8]}...{node_id[-8:]}"
        return node_id

    def peers_ids(self) -> Set[str]:
        """Peers we have at least one channel with."""
        ids = {p.id for p in self.peers if p.has_channels}
        ids.update(f.peer_id for f in self.funds)
        return ids

    def node_ids_with_aliases(self) -> List[str]:
        return sorted(n.nodeid for n in self.nodes if n.alias)

    def chan_meta_per_node(self) -> Dict[str, ChannelFee]:
        """Outgoing edge count, fee sum and distinct fee rates per source node."""
        if self._chan_meta_per_node is None:
            meta: Dict[str, ChannelFee] = defaultdict(ChannelFee)
            for c in self.channels:
                meta[c.source].add(c.fee_per_millionth)
            self._chan_meta_per_node = dict(meta)
        return self._chan_meta_per_node

    # =========================================================================
    # OWNED CHANNELS
    # =========================================================================

    def normal_channels(self) -> List[Fund]:
        return [f for f in self.funds if f.state == CHANNELD_NORMAL]

    def get_fund(self, short_channel_id: str) -> Optional[Fund]:
        return self._funds_by_scid.get(short_channel_id)

    def my_scids(self) -> Set[str]:
        return set(self._funds_by_scid)

    def total_channel_funds_sat(self) -> int:
        """Our side of every normal channel, in sats."""
        return sum(f.our_amount_msat for f in self.normal_channels()) // 1000

    @property
    def channel_counters(self) -> ChannelCounters:
        if self._counters is None:
            self._counters = compute_channel_counters(self._settled, self.now)
        return self._counters

    def channel_meta(self, fund: Fund) -> ChannelMeta:
        return build_channel_meta(
            fund, self.channel_counters, self.get_node_alias(fund.peer_id),
            self.current_block, self.config.pull_in_balance, self.config.push_out_balance,
        )

    def channel_metas(self) -> List[ChannelMeta]:
        return [self.channel_meta(f) for f in self.normal_channels()]

    def rebalance_sets(self) -> Tuple[List[str], List[str]]:
        """Short channel ids classified PullIn and PushOut, each sorted."""
        metas = self.channel_metas()
        pull_in = sorted(m.short_channel_id for m in metas if m.rebalance == Rebalance.PULL_IN)
        push_out = sorted(m.short_channel_id for m in metas if m.rebalance == Rebalance.PUSH_OUT)
        return pull_in, push_out

    def get_channel_age_days(self, short_channel_id: str) -> int:
        """Age in days assuming 144 blocks per day; for display only."""
        born = block_from_scid(short_channel_id)
        if born is None:
            return 0
        return max(self.current_block - born, 0) // BLOCKS_PER_DAY

    def get_channel_total_forwards(self, short_channel_id: str) -> int:
        return len(self.get_channel_forwards(short_channel_id))

    def get_channel_total_fees(self, short_channel_id: str) -> int:
        """Fee sats earned on forwards that left through the channel."""
        return self.channel_counters.ever_fee_sat_out.get(short_channel_id, 0)

    def get_channel_sats_per_day(self, short_channel_id: str) -> float:
        age_days = self.get_channel_age_days(short_channel_id)
        if age_days <= 0:
            return 0.0
        return self.get_channel_total_fees(short_channel_id) / age_days

    def mature_inactive_channels(self) -> List[Fund]:
        """
        Normal channels older than mature_channel_days without a settled
        forward in the last 30 days, excluding annotated peers.
        """
        counters = self.channel_counters
        result = []
        for fund in self.normal_channels():
            if fund.peer_id in self.peer_notes:
                continue
            if self.get_channel_age_days(fund.scid) < self.config.mature_channel_days:
                continue
            recent = (counters.last_month_fwd_in.get(fund.scid, 0)
                      + counters.last_month_fwd_out.get(fund.scid, 0))
            if recent == 0:
                result.append(fund)
        return sorted(result, key=lambda f: f.scid)

    # =========================================================================
    # FORWARDS
    # =========================================================================

    def settled_forwards(self) -> List[SettledForward]:
        """Settled forwards, most recently resolved first."""
        return self._settled

    def filter_settled_forwards_by_hours(self, hours: float) -> List[SettledForward]:
        start = self.now - hours * HOUR_SECONDS
        return [s for s in self._settled if s.resolved_time >= start]

    def filter_settled_forwards_by_days(self, days: float) -> List[SettledForward]:
        return self.filter_settled_forwards_by_hours(days * 24)

    def filter_forwards_by_hours(self, hours: float, statuses: Optional[Set[str]] = None) -> List[Forward]:
        """Raw forwards of the given statuses whose event time is in the window."""
        start = self.now - hours * HOUR_SECONDS
        return [f for f in self.forwards
                if f.event_time >= start and (statuses is None or f.status in statuses)]

    def get_channel_forwards(self, short_channel_id: str) -> List[SettledForward]:
        return [s for s in self._settled if s.touches(short_channel_id)]

    def get_channel_failed_forwards(self, short_channel_id: str) -> List[Forward]:
        return [f for f in self.forwards
                if f.status == FORWARD_FAILED and f.touches(short_channel_id)]

    def get_channel_local_failed_forwards(self, short_channel_id: str) -> List[Forward]:
        return [f for f in self.forwards
                if f.status == FORWARD_LOCAL_FAILED and f.touches(short_channel_id)]

    def failed_forwards(self) -> List[Forward]:
        """Failed and local_failed forwards, most recent first."""
        failed = [f for f in self.forwards if f.status in (FORWARD_FAILED, FORWARD_LOCAL_FAILED)]
        return sorted(failed, key=lambda f: f.event_time, reverse=True)

    def forwards_by_weekday(self) -> List[int]:
        return forwards_by_weekday(self._settled)

    def get_forward_statistics(self) -> Dict[str, ForwardStatistics]:
        return forward_statistics(self.forwards, self.now)

    def get_apy_data(self) -> ApyData:
        return ApyData.compute(self._settled, self.now, self.total_channel_funds_sat())

    # =========================================================================
    # FEES
    # =========================================================================

    def network_channel_fees(self) -> Tuple[float, float]:
        """Mean and median ppm over zero-base edges charging at most 10,000 ppm."""
        return mean_median([c.fee_per_millionth for c in self.channels if is_reasonable_fee(c)])

    def node_channel_fees(self, node_id: Optional[str] = None) -> Tuple[float, float]:
        node_id = node_id or self.my_id
        return mean_median([c.fee_per_millionth for c in self.channels
                            if c.source == node_id and is_reasonable_fee(c)])

    def get_peer_fee_distribution(self, peer_id: str) -> PeerFeeDistribution:
        return PeerFeeDistribution(
            peer_id=peer_id,
            outgoing=fee_distribution(self.edges_to(peer_id)),
            incoming=fee_distribution(self.edges_from(peer_id)),
        )

    def node_fee_histogram(self, node_id: Optional[str] = None) -> List[int]:
        return fee_histogram(self.edges_from(node_id or self.my_id))

    def zero_base_fees(self) -> bool:
        """True when every normal channel has an announced zero-base-fee edge."""
        for fund in self.normal_channels():
            edge = self.get_our_edge(fund.scid)
            if edge is None or edge.base_fee_msat != 0:
                return False
        return True

    # =========================================================================
    # DATASTORE CACHES AND HISTORY
    # =========================================================================

    def get_peer_note(self, peer_id: str) -> Optional[str]:
        return self.peer_notes.get(peer_id)

    def get_setchannel_timestamp(self, short_channel_id: str) -> Optional[int]:
        return self.setchannel_timestamps.get(short_channel_id)

    def get_closed_channels_info(self) -> List[ClosedChannelInfo]:
        infos = []
        for closed in self.closed_channels:
            scid_display = closed.short_channel_id or "N/A"
            alias = self.get_node_alias(closed.peer_id) if closed.peer_id else "N/A"
            infos.append(ClosedChannelInfo(
                closed=closed,
                alias=alias,
                opening_block=block_from_scid(closed.short_channel_id),
                scid_display=scid_display,
            ))
        return sorted(infos, key=lambda i: i.scid_display)

    def node_summary(self) -> Dict[str, Any]:
        """Headline numbers for the index page and the fees log."""
        network_mean, network_median = self.network_channel_fees()
        balance_mean, balance_variance = mean_variance(
            [f.balance_ratio for f in self.normal_channels()])
        pull_in, push_out = self.rebalance_sets()
        total = len(self.forwards)
        settled = len(self._settled)
        return {
            "id": self.my_id,
            "alias": self.info.alias or self.get_node_alias(self.my_id),
            "blockheight": self.current_block,
            "network_channels": len(self.channels),
            "network_nodes": len(self.nodes),
            "peers": len(self.peers),
            "normal_channels": len(self.normal_channels()),
            "forwards_total": total,
            "forwards_settled": settled,
            "settled_perc": (settled / total * 100) if total else 0.0,
            "settled_frequency": settled_frequency(self._settled, self.now),
            "network_fee_mean": network_mean,
            "network_fee_median": network_median,
            "zero_base_fees": self.zero_base_fees(),
            "balance_mean": balance_mean,
            "balance_variance": balance_variance,
            "pull_in": len(pull_in),
            "push_out": len(push_out),
        }
