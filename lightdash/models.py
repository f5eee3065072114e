"""
Data model for cl-lightdash

Typed views over the JSON documents returned by Core Lightning:
getinfo, listchannels, listpeers, listfunds, listforwards, listnodes,
listclosedchannels, listdatastore and getroute.

Every record is parsed once by the Store and never mutated afterwards.
Parsing raises ValueError (or KeyError/TypeError from missing or mistyped
fields); the Store turns those into SnapshotParseError.

Amounts are accepted both as integers and in the legacy "1234msat"
string form of older lightningd releases.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


FORWARD_SETTLED = "settled"
FORWARD_FAILED = "failed"
FORWARD_LOCAL_FAILED = "local_failed"

CHANNELD_NORMAL = "CHANNELD_NORMAL"


def parse_msat(value: Any) -> int:
    """Parse an msat amount given as int or as a '1234msat' string."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid msat amount: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        if value.endswith("msat"):
            value = value[:-4]
        return int(value)
    raise ValueError(f"Invalid msat amount: {value!r}")


def parse_optional_msat(value: Any) -> Optional[int]:
    if value is None:
        return None
    return parse_msat(value)


def block_from_scid(short_channel_id: Optional[str]) -> Optional[int]:
    """Return the funding block height encoded in '<block>x<tx>x<out>'."""
    if not short_channel_id:
        return None
    head = short_channel_id.split("x", 1)[0]
    try:
        return int(head)
    except ValueError:
        return None


def timestamp_to_datetime(timestamp: Optional[float]) -> Optional[datetime]:
    """Convert a unix timestamp to an aware datetime, None if impossible."""
    if timestamp is None:
        return None
    try:
        return datetime.fromtimestamp(timestamp, tz=timezone.utc)
    except (OverflowError, OSError, ValueError, TypeError):
        return None


@dataclass
class NodeInfo:
    """Our own node identity (getinfo)."""
    id: str
    blockheight: int
    alias: Optional[str] = None

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "NodeInfo":
        return cls(
            id=d["id"],
            blockheight=int(d["blockheight"]),
            alias=d.get("alias"),
        )


@dataclass
class Channel:
    """
    One directed gossip edge (listchannels).

    Each physical channel appears twice, once per direction, sharing the
    short_channel_id with source and destination swapped.
    """
    short_channel_id: str
    source: str
    destination: str
    amount_msat: int
    active: bool
    last_update: int
    base_fee_msat: int
    fee_per_millionth: int
    delay: int
    htlc_min_msat: int
    htlc_max_msat: int
    public: bool = True

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Channel":
        htlc_max = d.get("htlc_maximum_msat")
        amount_msat = parse_msat(d.get("amount_msat", 0))
        return cls(
            short_channel_id=d["short_channel_id"],
            source=d["source"],
            destination=d["destination"],
            amount_msat=amount_msat,
            active=bool(d.get("active", True)),
            last_update=int(d.get("last_update", 0)),
            base_fee_msat=int(d["base_fee_millisatoshi"]),
            fee_per_millionth=int(d["fee_per_millionth"]),
            delay=int(d.get("delay", 0)),
            htlc_min_msat=parse_msat(d.get("htlc_minimum_msat", 0)),
            htlc_max_msat=parse_msat(htlc_max) if htlc_max is not None else amount_msat,
            public=bool(d.get("public", True)),
        )


@dataclass
class PeerChannel:
    """Channel state nested in a listpeers entry (older lightningd)."""
    state: str
    short_channel_id: Optional[str] = None
    direction: Optional[int] = None
    channel_id: Optional[str] = None
    funding_txid: Optional[str] = None

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "PeerChannel":
        return cls(
            state=d["state"],
            short_channel_id=d.get("short_channel_id"),
            direction=d.get("direction"),
            channel_id=d.get("channel_id"),
            funding_txid=d.get("funding_txid"),
        )


@dataclass
class Peer:
    """A connected or known peer (listpeers)."""
    id: str
    connected: bool
    num_channels: int
    features: str = ""
    channels: List[PeerChannel] = field(default_factory=list)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Peer":
        channels = [PeerChannel.from_dict(c) for c in d.get("channels", [])]
        return cls(
            id=d["id"],
            connected=bool(d.get("connected", False)),
            num_channels=int(d.get("num_channels", len(channels))),
            features=d.get("features", ""),
            channels=channels,
        )

    @property
    def has_channels(self) -> bool:
        return self.num_channels > 0 or bool(self.channels)


@dataclass
class Node:
    """A gossip node announcement (listnodes)."""
    nodeid: str
    alias: Optional[str] = None
    last_timestamp: Optional[int] = None
    color: Optional[str] = None

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Node":
        last_timestamp = d.get("last_timestamp")
        return cls(
            nodeid=d["nodeid"],
            alias=d.get("alias"),
            last_timestamp=int(last_timestamp) if last_timestamp is not None else None,
            color=d.get("color"),
        )


@dataclass
class Fund:
    """
    Our local view of one of our channels (listfunds.channels).

    balance_ratio is our share of the channel, clamped to [0, 1] even when
    our_amount_msat is reported above amount_msat.
    """
    peer_id: str
    state: str
    our_amount_msat: int
    amount_msat: int
    funding_txid: str
    funding_output: int
    short_channel_id: Optional[str] = None
    channel_id: Optional[str] = None
    connected: bool = False

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Fund":
        return cls(
            peer_id=d["peer_id"],
            state=d["state"],
            our_amount_msat=parse_msat(d["our_amount_msat"]),
            amount_msat=parse_msat(d["amount_msat"]),
            funding_txid=d["funding_txid"],
            funding_output=int(d.get("funding_output", 0)),
            short_channel_id=d.get("short_channel_id"),
            channel_id=d.get("channel_id"),
            connected=bool(d.get("connected", False)),
        )

    @property
    def balance_ratio(self) -> float:
        if self.amount_msat <= 0:
            return 0.0
        return min(max(self.our_amount_msat / self.amount_msat, 0.0), 1.0)

    @property
    def balance_perc(self) -> int:
        """Balance ratio as a floored percentage, for display."""
        return int(self.balance_ratio * 100)

    @property
    def block_born(self) -> Optional[int]:
        return block_from_scid(self.short_channel_id)

    @property
    def scid(self) -> str:
        return self.short_channel_id or ""


@dataclass
class Forward:
    """A forwarding attempt in any status (listforwards)."""
    in_channel: str
    in_msat: int
    status: str
    received_time: float
    out_channel: Optional[str] = None
    out_msat: Optional[int] = None
    fee_msat: Optional[int] = None
    resolved_time: Optional[float] = None
    failreason: Optional[str] = None
    failcode: Optional[int] = None

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Forward":
        resolved_time = d.get("resolved_time")
        return cls(
            in_channel=d["in_channel"],
            in_msat=parse_msat(d["in_msat"]),
            status=d["status"],
            received_time=float(d["received_time"]),
            out_channel=d.get("out_channel"),
            out_msat=parse_optional_msat(d.get("out_msat")),
            fee_msat=parse_optional_msat(d.get("fee_msat")),
            resolved_time=float(resolved_time) if resolved_time is not None else None,
            failreason=d.get("failreason"),
            failcode=d.get("failcode"),
        )

    @property
    def event_time(self) -> float:
        """Resolution time when known, otherwise the time it was received."""
        if self.resolved_time is not None:
            return self.resolved_time
        return self.received_time

    def touches(self, short_channel_id: str) -> bool:
        return self.in_channel == short_channel_id or self.out_channel == short_channel_id


@dataclass
class SettledForward:
    """A settled forward with every optional field present."""
    in_channel: str
    out_channel: str
    in_msat: int
    out_msat: int
    fee_msat: int
    received_time: float
    resolved_time: float

    @classmethod
    def from_forward(cls, forward: Forward) -> Optional["SettledForward"]:
        """
        Project a Forward, or return None when it is not a usable settlement.

        Forwards whose timestamps cannot be converted to a calendar instant
        are dropped here.
        """
        if forward.status != FORWARD_SETTLED:
            return None
        if (forward.out_channel is None or forward.out_msat is None
                or forward.fee_msat is None or forward.resolved_time is None):
            return None
        if (timestamp_to_datetime(forward.resolved_time) is None
                or timestamp_to_datetime(forward.received_time) is None):
            return None
        return cls(
            in_channel=forward.in_channel,
            out_channel=forward.out_channel,
            in_msat=forward.in_msat,
            out_msat=forward.out_msat,
            fee_msat=forward.fee_msat,
            received_time=forward.received_time,
            resolved_time=forward.resolved_time,
        )

    @property
    def fee_sat(self) -> int:
        return self.fee_msat // 1000

    @property
    def out_sat(self) -> int:
        return self.out_msat // 1000

    @property
    def fee_ppm(self) -> int:
        if self.out_msat == 0:
            return 0
        return self.fee_msat * 1_000_000 // self.out_msat

    @property
    def resolved_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.resolved_time, tz=timezone.utc)

    def touches(self, short_channel_id: str) -> bool:
        return self.in_channel == short_channel_id or self.out_channel == short_channel_id


@dataclass
class ClosedChannel:
    """A historical channel (listclosedchannels)."""
    channel_id: str
    funding_txid: str
    close_cause: str
    total_local_commitments: int
    total_remote_commitments: int
    total_htlcs_sent: int
    total_msat: int
    final_to_us_msat: int
    peer_id: Optional[str] = None
    short_channel_id: Optional[str] = None
    opener: Optional[str] = None
    closer: Optional[str] = None
    funding_outnum: Optional[int] = None
    min_to_us_msat: Optional[int] = None
    max_to_us_msat: Optional[int] = None
    private: bool = False

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ClosedChannel":
        return cls(
            channel_id=d["channel_id"],
            funding_txid=d["funding_txid"],
            close_cause=d.get("close_cause", "unknown"),
            total_local_commitments=int(d.get("total_local_commitments", 0)),
            total_remote_commitments=int(d.get("total_remote_commitments", 0)),
            total_htlcs_sent=int(d.get("total_htlcs_sent", 0)),
            total_msat=parse_msat(d.get("total_msat", 0)),
            final_to_us_msat=parse_msat(d.get("final_to_us_msat", 0)),
            peer_id=d.get("peer_id"),
            short_channel_id=d.get("short_channel_id"),
            opener=d.get("opener"),
            closer=d.get("closer"),
            funding_outnum=d.get("funding_outnum"),
            min_to_us_msat=parse_optional_msat(d.get("min_to_us_msat")),
            max_to_us_msat=parse_optional_msat(d.get("max_to_us_msat")),
            private=bool(d.get("private", False)),
        )


@dataclass
class ClosedChannelInfo:
    """A ClosedChannel enriched with data joined from the rest of the snapshot."""
    closed: ClosedChannel
    alias: str
    opening_block: Optional[int]
    scid_display: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel_id": self.closed.channel_id,
            "short_channel_id": self.scid_display,
            "peer_id": self.closed.peer_id,
            "alias": self.alias,
            "opening_block": self.opening_block,
            "close_cause": self.closed.close_cause,
            "opener": self.closed.opener,
            "closer": self.closed.closer,
            "total_sat": self.closed.total_msat // 1000,
            "final_to_us_sat": self.closed.final_to_us_msat // 1000,
            "total_htlcs_sent": self.closed.total_htlcs_sent,
        }


@dataclass
class DatastoreEntry:
    """A generation-counted datastore value (listdatastore)."""
    key: List[str]
    generation: Optional[int] = None
    hex: Optional[str] = None
    string: Optional[str] = None

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "DatastoreEntry":
        key = d["key"]
        if not isinstance(key, list):
            raise ValueError(f"Datastore key must be a list, got {key!r}")
        return cls(
            key=[str(k) for k in key],
            generation=d.get("generation"),
            hex=d.get("hex"),
            string=d.get("string"),
        )

    def value(self) -> Optional[str]:
        """String payload, decoding the hex payload as UTF-8 when needed."""
        if self.string is not None:
            return self.string
        if self.hex is not None:
            return bytes.fromhex(self.hex).decode("utf-8")
        return None


@dataclass
class RouteHop:
    """One hop of a getroute answer."""
    id: str
    channel: str
    direction: int
    amount_msat: int
    delay: int
    style: str = "tlv"

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "RouteHop":
        return cls(
            id=d["id"],
            channel=d["channel"],
            direction=int(d.get("direction", 0)),
            amount_msat=parse_msat(d["amount_msat"]),
            delay=int(d.get("delay", 0)),
            style=d.get("style", "tlv"),
        )
