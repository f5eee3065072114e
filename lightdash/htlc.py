"""
HTLC-max adjustment pass for cl-lightdash

Lowers the advertised maximum HTLC of channels whose local balance has
dropped below it, which avoids local failures on forwards we could never
carry. Equivalent to:

    lightning-cli listpeerchannels | jq '.channels
        | map(select(.to_us_msat < .maximum_htlc_out_msat))
        | map(select(.to_us_msat != 0))'

followed by `lightning-cli -k setchannel id=<scid> htlcmax=<n>` with n the
largest power of two not above the local balance.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pyln.client import RpcError

from .executor import Action, ActionExecutor, SETCHANNEL
from .fee_controller import largest_power_of_two_leq
from .models import CHANNELD_NORMAL, parse_msat
from .node import SnapshotLoadError, SnapshotParseError


@dataclass
class PeerChannelBalance:
    """The fields of a listpeerchannels entry this pass looks at."""
    peer_id: str
    state: str
    short_channel_id: Optional[str]
    to_us_msat: int
    maximum_htlc_out_msat: int

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "PeerChannelBalance":
        return cls(
            peer_id=d.get("peer_id", ""),
            state=d["state"],
            short_channel_id=d.get("short_channel_id"),
            to_us_msat=parse_msat(d.get("to_us_msat", 0)),
            maximum_htlc_out_msat=parse_msat(d.get("maximum_htlc_out_msat", 0)),
        )

    @property
    def needs_adjustment(self) -> bool:
        return (self.state == CHANNELD_NORMAL
                and bool(self.short_channel_id)
                and self.to_us_msat != 0
                and self.to_us_msat < self.maximum_htlc_out_msat)

    @property
    def new_htlc_max_msat(self) -> int:
        return max(largest_power_of_two_leq(self.to_us_msat), 1)


class HtlcMaxAdjuster:
    """Plans and applies htlcmax reductions from listpeerchannels."""

    def __init__(self, plugin, executor: ActionExecutor):
        self.plugin = plugin
        self.executor = executor

    def load_channels(self) -> List[PeerChannelBalance]:
        try:
            result = self.plugin.rpc.call("listpeerchannels")
        except (RpcError, OSError) as e:
            raise SnapshotLoadError("listpeerchannels", str(e))
        try:
            return [PeerChannelBalance.from_dict(c) for c in result["channels"]]
        except (KeyError, TypeError, ValueError) as e:
            raise SnapshotParseError("listpeerchannels", f"{type(e).__name__}: {e}")

    def plan(self, channels: List[PeerChannelBalance]) -> List[Action]:
        to_adjust = sorted((c for c in channels if c.needs_adjustment),
                           key=lambda c: c.short_channel_id)
        self.plugin.log(f"Found {len(to_adjust)} channels needing HTLC max adjustment")

        actions = []
        for channel in to_adjust:
            self.plugin.log(
                f"Adjusting {channel.short_channel_id}: to_us_msat={channel.to_us_msat} "
                f"max_htlc:{channel.maximum_htlc_out_msat}->{channel.new_htlc_max_msat}"
            )
            actions.append(Action(
                method=SETCHANNEL,
                params={"id": channel.short_channel_id, "htlcmax": channel.new_htlc_max_msat},
            ))
        return actions

    def run(self) -> Dict[str, Any]:
        self.plugin.log("Running HTLC max adjustment")
        channels = self.load_channels()
        self.plugin.log(f"Found {len(channels)} channels")
        actions = self.plan(channels)
        results = self.executor.execute_all(actions)
        self.plugin.log("HTLC max adjustment completed")
        return {
            "channels": len(channels),
            "planned": len(actions),
            "failed": sum(1 for r in results if not r.success),
            "results": [r.to_dict() for r in results],
        }
