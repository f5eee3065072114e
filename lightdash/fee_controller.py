"""
Fee Controller module for cl-lightdash

Deterministic per-channel control law over fee rate and HTLC bounds.

For each owned channel in CHANNELD_NORMAL with an announced edge of ours
in the gossip graph:

1. perc = our share of the channel, clamped to [0, 1]
2. Count the channel's outgoing forwards of the last 24 hours:
   forwards_ok (settled) and forwards_ko (local_failed)
3. Direction:
   - nothing happened, or only a few local failures -> reduce the fee by
     step_perc * perc (a drained channel is never reduced); reductions
     below 1% are treated as no change
   - otherwise -> increase by step_perc_up
4. new_ppm = clamp(round(ppm * (1 + change)), ppm_min, ppm_max)
5. new_max_htlc = largest power of two <= our balance (0 when empty)
6. new_min_htlc = min(min_htlc_msat, new_max_htlc)

A setchannel action is emitted only when one of the three values
changed. After an emitted action (executed successfully or only logged)
the time is written to [lightdash, last_setchannel, <scid>].
"""

import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from pyln.client import RpcError

from .config import Config
from .datastore import Datastore, DatastoreMode, setchannel_key
from .executor import Action, ActionExecutor, ActionResult, SETCHANNEL
from .metrics import DAY_SECONDS, cut_days
from .models import Channel, FORWARD_LOCAL_FAILED, FORWARD_SETTLED, Forward, Fund


# Look-back window for the "did it forward" decision
FORWARD_WINDOW_HOURS = 24


def largest_power_of_two_leq(n: int) -> int:
    """Largest power of two <= n; 0 for n == 0."""
    if n <= 0:
        return 0
    return 1 << (n.bit_length() - 1)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


class FeeDirection(Enum):
    """Classification of a decision, for logging and display only."""
    INC = "INC"
    DEC = "DEC"
    EQU = "EQU"


@dataclass
class FeeDecision:
    """
    Result of the control law for one channel.

    Attributes:
        perc_change: Signed relative change applied to the current ppm
        forwards_ok: Settled forwards out of the channel in the window
        forwards_ko: Local failures out of the channel in the window
    """
    short_channel_id: str
    peer_id: str
    alias: str
    our_amount_msat: int
    perc: float
    forwards_ok: int
    forwards_ko: int
    perc_change: float
    fee_base_msat: int
    old_ppm: int
    new_ppm: int
    old_max_htlc_msat: int
    new_max_htlc_msat: int
    old_min_htlc_msat: int
    new_min_htlc_msat: int

    @property
    def direction(self) -> FeeDirection:
        if self.new_ppm > self.old_ppm:
            return FeeDirection.INC
        if self.new_ppm < self.old_ppm:
            return FeeDirection.DEC
        return FeeDirection.EQU

    @property
    def changed(self) -> bool:
        return (self.old_ppm != self.new_ppm
                or self.old_max_htlc_msat != self.new_max_htlc_msat
                or self.old_min_htlc_msat != self.new_min_htlc_msat)

    def to_action(self) -> Action:
        return Action(
            method=SETCHANNEL,
            params={
                "id": self.short_channel_id,
                "feebase": self.fee_base_msat,
                "feeppm": self.new_ppm,
                "htlcmin": self.new_min_htlc_msat,
                "htlcmax": self.new_max_htlc_msat,
            },
            positional=True,
        )

    def describe(self) -> str:
        return (
            f"{self.direction.value} {self.short_channel_id} with {self.alias}. "
            f"my_fund:{self.our_amount_msat} ({self.perc * 100:.1f}%) "
            f"ppm:{self.old_ppm}->{self.new_ppm} "
            f"max_htlc:{self.old_max_htlc_msat}->{self.new_max_htlc_msat} "
            f"min_htlc:{self.old_min_htlc_msat}->{self.new_min_htlc_msat}"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "short_channel_id": self.short_channel_id,
            "peer_id": self.peer_id,
            "alias": self.alias,
            "direction": self.direction.value,
            "perc": round(self.perc, 4),
            "forwards_ok": self.forwards_ok,
            "forwards_ko": self.forwards_ko,
            "perc_change": round(self.perc_change, 4),
            "old_ppm": self.old_ppm,
            "new_ppm": self.new_ppm,
            "old_max_htlc_msat": self.old_max_htlc_msat,
            "new_max_htlc_msat": self.new_max_htlc_msat,
            "old_min_htlc_msat": self.old_min_htlc_msat,
            "new_min_htlc_msat": self.new_min_htlc_msat,
            "changed": self.changed,
        }


def count_outgoing(short_channel_id: str, forwards: List[Forward]) -> Tuple[int, int]:
    """(settled, local_failed) forwards that left through the channel."""
    ok = ko = 0
    for f in forwards:
        if f.out_channel != short_channel_id:
            continue
        if f.status == FORWARD_SETTLED:
            ok += 1
        elif f.status == FORWARD_LOCAL_FAILED:
            ko += 1
    return ok, ko


def compute_perc_change(perc: float, forwards_ok: int, forwards_ko: int, config: Config) -> float:
    if forwards_ok + forwards_ko == 0 or (forwards_ok == 0 and forwards_ko < config.fk_tolerance):
        change = -config.step_perc * perc
        if abs(change) < config.min_effective_change:
            return 0.0
        return change
    return config.step_perc_up


class FeeController:
    """
    Plans and applies setchannel actions for every owned channel.

    The clock is injectable so tests can pin the persisted timestamps.
    """

    def __init__(self, plugin, config: Config, store, executor: ActionExecutor,
                 clock: Optional[Callable[[], float]] = None):
        self.plugin = plugin
        self.config = config
        self.store = store
        self.executor = executor
        self.datastore = Datastore(plugin)
        self.clock = clock or time.time

    def decide(self, fund: Fund, our_edge: Channel, recent_forwards: List[Forward],
               alias: str = "") -> FeeDecision:
        """Apply the control law to one channel; no side effects."""
        cfg = self.config
        scid = fund.scid
        perc = fund.balance_ratio
        ok, ko = count_outgoing(scid, recent_forwards)
        change = compute_perc_change(perc, ok, ko, cfg)

        current_ppm = our_edge.fee_per_millionth
        new_ppm = round_half_up(current_ppm * (1 + change))
        new_ppm = max(cfg.ppm_min, min(cfg.ppm_max, new_ppm))

        new_max_htlc = largest_power_of_two_leq(fund.our_amount_msat)
        new_min_htlc = min(cfg.min_htlc_msat, new_max_htlc)

        return FeeDecision(
            short_channel_id=scid,
            peer_id=fund.peer_id,
            alias=alias or fund.peer_id,
            our_amount_msat=fund.our_amount_msat,
            perc=perc,
            forwards_ok=ok,
            forwards_ko=ko,
            perc_change=change,
            fee_base_msat=cfg.fee_base_msat,
            old_ppm=current_ppm,
            new_ppm=new_ppm,
            old_max_htlc_msat=our_edge.htlc_max_msat,
            new_max_htlc_msat=new_max_htlc,
            old_min_htlc_msat=our_edge.htlc_min_msat,
            new_min_htlc_msat=new_min_htlc,
        )

    def log_channels(self) -> int:
        """Log one summary line per normal channel; returns the line count."""
        store = self.store
        lines = 0
        for meta in sorted(store.channel_metas(), key=lambda m: m.short_channel_id):
            fund = meta.fund
            ours = store.get_our_edge(fund.scid)
            theirs = store.get_their_edge(fund)
            node = store.get_node(fund.peer_id)
            node_upd = chan_upd = "  -"
            if node is not None and node.last_timestamp:
                node_upd = cut_days(int(max(store.now - node.last_timestamp, 0) // DAY_SECONDS))
            if theirs is not None:
                chan_upd = cut_days(int(max(store.now - theirs.last_update, 0) // DAY_SECONDS))
            our_fee = f"{ours.base_fee_msat}/{ours.fee_per_millionth}" if ours else "-"
            htlc = f"{ours.htlc_min_msat}/{ours.htlc_max_msat}" if ours else "-"
            their_fee = f"{theirs.base_fee_msat}/{theirs.fee_per_millionth}" if theirs else "-"
            self.plugin.log(
                f"{fund.scid} cap:{fund.amount_msat // 1000} bal:{fund.balance_perc}% "
                f"htlc:{htlc} ours:{our_fee} theirs:{their_fee} "
                f"node_upd:{node_upd} chan_upd:{chan_upd} "
                f"month:{meta.last_month_fwd}/{meta.last_month_fee_sat} "
                f"fees:{meta.ever_fee_sat_out}/{meta.ever_fee_sat_in} gain:{meta.gain_per_block} "
                f"sink:{meta.is_sink_perc()}/{meta.is_sink_last_month_perc()} "
                f"{meta.rebalance.value} {meta.alias}"
            )
            lines += 1
        return lines

    def plan(self) -> List[FeeDecision]:
        """Decisions for every normal channel with a known edge, sorted by scid."""
        recent = self.store.filter_forwards_by_hours(
            FORWARD_WINDOW_HOURS, {FORWARD_SETTLED, FORWARD_LOCAL_FAILED})
        decisions = []
        for fund in sorted(self.store.normal_channels(), key=lambda f: f.scid):
            if not fund.short_channel_id:
                continue
            our_edge = self.store.get_our_edge(fund.scid)
            if our_edge is None:
                self.plugin.log(f"No gossip edge of ours for {fund.scid}, skipping", level='warn')
                continue
            decision = self.decide(fund, our_edge, recent, self.store.get_node_alias(fund.peer_id))
            self.plugin.log(decision.describe())
            decisions.append(decision)
        return decisions

    def apply(self, decision: FeeDecision) -> Optional[ActionResult]:
        """Emit the decision's action if it changed anything; record the time."""
        if not decision.changed:
            self.plugin.log(f"skipping {decision.short_channel_id}", level='debug')
            return None

        result = self.executor.execute(decision.to_action(), decision.alias)
        if result.success:
            self._record_setchannel(decision.short_channel_id)
        return result

    def run(self) -> Dict[str, Any]:
        """
        Plan every channel, then emit the changed ones.

        Returns:
            Summary dict with decisions and action results
        """
        self.log_channels()
        decisions = self.plan()
        results = []
        for decision in decisions:
            result = self.apply(decision)
            if result is not None:
                results.append(result)

        failed = sum(1 for r in results if not r.success)
        self.plugin.log(
            f"Fee pass: {len(decisions)} channels evaluated, {len(results)} actions, {failed} failed"
        )
        return {
            "evaluated": len(decisions),
            "actions": len(results),
            "failed": failed,
            "executed": self.config.execute_setchannel,
            "decisions": [d.to_dict() for d in decisions],
            "results": [r.to_dict() for r in results],
        }

    def _record_setchannel(self, short_channel_id: str) -> None:
        timestamp = str(int(self.clock()))
        try:
            self.datastore.put_string(setchannel_key(short_channel_id), timestamp,
                                      DatastoreMode.CREATE_OR_REPLACE)
        except (RpcError, OSError) as e:
            self.plugin.log(
                f"Failed to save setchannel timestamp for {short_channel_id}: {e}",
                level='error'
            )
