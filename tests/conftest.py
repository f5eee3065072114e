"""
Pytest fixtures for cl-lightdash tests.

Provides an in-memory RPC, a snapshot builder and plugin fixtures.
"""

import copy
import os
import sys
from unittest.mock import MagicMock

import pytest
from pyln.client import RpcError

# Add package to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from lightdash.config import Config
from lightdash.node import WRITE_METHODS
from lightdash.store import Store


NOW = 1_700_000_000
HOUR = 3600
DAY = 86400

MY_ID = "02" + "a" * 64
PEER_B = "02" + "b" * 64
PEER_C = "02" + "c" * 64
PEER_D = "03" + "d" * 64
PEER_E = "03" + "e" * 64


class FakeRpc:
    """
    RPC answering from an in-memory {method: response} map.

    A response may be a dict (deep-copied on every call), a callable
    taking the payload, or an exception instance to raise. Write methods
    without a response answer {}.
    """

    def __init__(self, responses=None):
        self.responses = dict(responses or {})
        self.calls = []

    def call(self, method, payload=None):
        payload = dict(payload or {})
        self.calls.append((method, payload))
        response = self.responses.get(method)
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(payload)
        if response is None:
            if method in WRITE_METHODS:
                return {}
            raise RpcError(method, payload, {"message": f"Unknown command '{method}'"})
        return copy.deepcopy(response)

    def calls_to(self, method):
        return [payload for m, payload in self.calls if m == method]


class SnapshotBuilder:
    """Assembles the JSON documents of one node snapshot."""

    def __init__(self, my_id=MY_ID, blockheight=800_000):
        self.info = {"id": my_id, "blockheight": blockheight, "alias": "my-node"}
        self.my_id = my_id
        self.channels = []
        self.peers = {}
        self.funds = []
        self.forwards = []
        self.nodes = []
        self.closed = []
        self.datastore = []

    def add_edge(self, scid, source, destination, ppm=100, base=0, amount_msat=1_000_000_000,
                 htlc_min_msat=0, htlc_max_msat=None, last_update=NOW, active=True):
        edge = {
            "source": source,
            "destination": destination,
            "short_channel_id": scid,
            "public": True,
            "amount_msat": amount_msat,
            "active": active,
            "last_update": last_update,
            "base_fee_millisatoshi": base,
            "fee_per_millionth": ppm,
            "delay": 144,
            "htlc_minimum_msat": htlc_min_msat,
        }
        if htlc_max_msat is not None:
            edge["htlc_maximum_msat"] = htlc_max_msat
        self.channels.append(edge)
        return self

    def add_channel(self, scid, peer_id, amount_msat, our_amount_msat, our_ppm=100, their_ppm=100,
                    our_base=0, their_base=0, htlc_min_msat=0, htlc_max_msat=None,
                    state="CHANNELD_NORMAL", announce_ours=True, announce_theirs=True):
        """Add one of our channels: the listfunds entry, the peer and both edges."""
        self.funds.append({
            "peer_id": peer_id,
            "connected": True,
            "state": state,
            "short_channel_id": scid,
            "our_amount_msat": our_amount_msat,
            "amount_msat": amount_msat,
            "funding_txid": "f" * 64,
            "funding_output": 0,
        })
        peer = self.peers.setdefault(peer_id, {"id": peer_id, "connected": True, "num_channels": 0})
        peer["num_channels"] += 1
        if announce_ours:
            self.add_edge(scid, self.my_id, peer_id, ppm=our_ppm, base=our_base,
                          amount_msat=amount_msat, htlc_min_msat=htlc_min_msat,
                          htlc_max_msat=htlc_max_msat if htlc_max_msat is not None else amount_msat)
        if announce_theirs:
            self.add_edge(scid, peer_id, self.my_id, ppm=their_ppm, base=their_base,
                          amount_msat=amount_msat)
        return self

    def add_node(self, node_id, alias=None, last_timestamp=None):
        node = {"nodeid": node_id}
        if alias is not None:
            node["alias"] = alias
        if last_timestamp is not None:
            node["last_timestamp"] = last_timestamp
        self.nodes.append(node)
        return self

    def add_forward(self, in_channel, out_channel, status="settled", out_msat=1_000_000,
                    fee_msat=1_000, resolved_time=NOW - HOUR, received_time=None):
        if received_time is None:
            received_time = (resolved_time or NOW) - 1
        forward = {
            "in_channel": in_channel,
            "in_msat": out_msat + (fee_msat or 0),
            "status": status,
            "received_time": received_time,
        }
        if out_channel is not None:
            forward["out_channel"] = out_channel
        if status == "settled":
            forward["out_msat"] = out_msat
            forward["fee_msat"] = fee_msat
        if resolved_time is not None:
            forward["resolved_time"] = resolved_time
        self.forwards.append(forward)
        return self

    def add_closed(self, channel_id, peer_id=None, scid=None, close_cause="remote",
                   total_msat=2_000_000_000, final_to_us_msat=1_000_000_000):
        closed = {
            "channel_id": channel_id,
            "funding_txid": "e" * 64,
            "close_cause": close_cause,
            "total_local_commitments": 3,
            "total_remote_commitments": 3,
            "total_htlcs_sent": 7,
            "total_msat": total_msat,
            "final_to_us_msat": final_to_us_msat,
            "opener": "local",
        }
        if peer_id is not None:
            closed["peer_id"] = peer_id
        if scid is not None:
            closed["short_channel_id"] = scid
        self.closed.append(closed)
        return self

    def add_datastore(self, key, string):
        self.datastore.append({"key": list(key), "generation": 0, "string": string})
        return self

    def _list_datastore(self, payload):
        prefix = payload.get("key", [])
        return {"datastore": [copy.deepcopy(e) for e in self.datastore
                              if e["key"][:len(prefix)] == prefix]}

    def responses(self):
        return {
            "getinfo": self.info,
            "listchannels": {"channels": self.channels},
            "listpeers": {"peers": list(self.peers.values())},
            "listfunds": {"channels": self.funds, "outputs": []},
            "listforwards": {"forwards": self.forwards},
            "listnodes": {"nodes": self.nodes},
            "listclosedchannels": {"closedchannels": self.closed},
            "listdatastore": self._list_datastore,
        }


def make_plugin(responses):
    plugin = MagicMock()
    plugin.log = MagicMock()
    plugin.rpc = FakeRpc(responses)
    return plugin


@pytest.fixture
def builder():
    """An empty snapshot for MY_ID."""
    return SnapshotBuilder()


@pytest.fixture
def mock_plugin():
    """Create a mock plugin with an empty FakeRpc."""
    return make_plugin({})


@pytest.fixture
def config():
    return Config()


@pytest.fixture
def load_store():
    """Load a Store from a SnapshotBuilder; returns (store, plugin)."""
    def _load(snapshot, cfg=None, now=NOW):
        plugin = make_plugin(snapshot.responses())
        store = Store.load(plugin, cfg or Config(), now=now)
        return store, plugin
    return _load


@pytest.fixture
def sample_peer_ids():
    """Sample peer IDs for testing."""
    return [PEER_B, PEER_C, PEER_D, PEER_E]
