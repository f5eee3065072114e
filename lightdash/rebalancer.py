"""
Rebalance Planner module for cl-lightdash

Plans sling rebalances from one snapshot. Two planners:

One-shot pull (default):
- Candidates: owned channels whose own fee is below source_ppm_max and
  that hold more than min_candidate_balance of the capacity. These are
  cheap, full channels that can give liquidity away.
- Targets: owned channels holding less than max_target_balance.
- For every target, one `sling-once` pull with
      factor  = max(0, 20 - forwards) + 3
      max_ppm = max(0, my_ppm - source_ppm_max) // factor
  so young channels (few forwards) are allowed to pay less.

Legacy jobs (`--jobs`):
- `sling-deletejob all`, then one `sling-job` per PullIn / PushOut
  channel with the opposite set as candidates, then `sling-go`.

Plans depend only on the snapshot and are sorted by short_channel_id, so
two runs over the same snapshot produce identical action lists.
"""

from dataclasses import dataclass
from typing import Any, Dict, List

from .config import Config
from .executor import Action, ActionExecutor, SLING_DELETEJOB, SLING_GO, SLING_JOB, SLING_ONCE
from .metrics import Rebalance


# Forward count after which a target gets the smallest factor
FACTOR_FORWARDS = 20
FACTOR_FLOOR = 3


def sling_factor(forwards: int) -> int:
    return max(0, FACTOR_FORWARDS - forwards) + FACTOR_FLOOR


def sling_max_ppm(my_ppm: int, source_ppm_max: int, forwards: int) -> int:
    """Fee budget for a pull into a channel charging my_ppm, never negative."""
    return max(0, my_ppm - source_ppm_max) // sling_factor(forwards)


@dataclass
class SlingPlan:
    """A planned sling action with the diagnostics logged beside it."""
    short_channel_id: str
    alias: str
    action: Action
    balance: float
    forwards: int
    is_sink: float = 0.5

    def details(self) -> str:
        return (f"perc_us:{self.balance:.2f} is_sink:{self.is_sink * 100:.0f}% "
                f"{self.forwards} {self.alias}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "short_channel_id": self.short_channel_id,
            "alias": self.alias,
            "balance": round(self.balance, 4),
            "forwards": self.forwards,
            "is_sink": round(self.is_sink, 4),
            "action": self.action.to_dict(),
        }


class SlingPlanner:
    """
    Builds sling actions from the Store and hands them to the executor.
    """

    def __init__(self, plugin, config: Config, store, executor: ActionExecutor):
        self.plugin = plugin
        self.config = config
        self.store = store
        self.executor = executor

    # =========================================================================
    # ONE-SHOT PULL
    # =========================================================================

    def find_candidates(self) -> List[str]:
        """Cheap, full channels that can give liquidity away, sorted."""
        cfg = self.config
        candidates = []
        for fund in self.store.normal_channels():
            if not fund.short_channel_id:
                continue
            our_edge = self.store.get_our_edge(fund.scid)
            if our_edge is None:
                continue
            if (our_edge.fee_per_millionth < cfg.source_ppm_max
                    and fund.balance_ratio > cfg.min_candidate_balance):
                candidates.append(fund.scid)
        return sorted(candidates)

    def plan_pull_once(self) -> List[SlingPlan]:
        cfg = self.config
        candidates = self.find_candidates()
        if not candidates:
            self.plugin.log("No sling candidates, nothing to pull")
            return []

        plans = []
        for fund in sorted(self.store.normal_channels(), key=lambda f: f.scid):
            if not fund.short_channel_id or fund.balance_ratio >= cfg.max_target_balance:
                continue
            our_edge = self.store.get_our_edge(fund.scid)
            if our_edge is None:
                self.plugin.log(f"No gossip edge of ours for {fund.scid}, not a sling target",
                                level='warn')
                continue
            sources = [c for c in candidates if c != fund.scid]
            if not sources:
                continue

            forwards = len(self.store.get_channel_forwards(fund.scid))
            max_ppm = sling_max_ppm(our_edge.fee_per_millionth, cfg.source_ppm_max, forwards)
            action = Action(
                method=SLING_ONCE,
                params={
                    "scid": fund.scid,
                    "direction": "pull",
                    "candidates": sources,
                    "maxppm": max_ppm,
                    "amount": cfg.sling_amount_sat,
                    "onceamount": cfg.sling_amount_sat,
                },
            )
            plans.append(SlingPlan(
                short_channel_id=fund.scid,
                alias=self.store.get_node_alias(fund.peer_id),
                action=action,
                balance=fund.balance_ratio,
                forwards=forwards,
            ))
        return plans

    # =========================================================================
    # LEGACY JOBS
    # =========================================================================

    def plan_jobs(self) -> List[SlingPlan]:
        """One sling-job per PullIn / PushOut channel, sorted by scid."""
        cfg = self.config
        metas = sorted(self.store.channel_metas(), key=lambda m: m.short_channel_id)
        pull_in = [m.short_channel_id for m in metas if m.rebalance == Rebalance.PULL_IN]
        push_out = [m.short_channel_id for m in metas if m.rebalance == Rebalance.PUSH_OUT]

        plans = []
        for meta in metas:
            if meta.rebalance == Rebalance.PULL_IN:
                direction, candidates, target = "pull", push_out, cfg.pull_in_balance
            elif meta.rebalance == Rebalance.PUSH_OUT:
                direction, candidates, target = "push", pull_in, cfg.push_out_balance
            else:
                continue
            action = Action(
                method=SLING_JOB,
                params={
                    "scid": meta.short_channel_id,
                    "amount": cfg.sling_job_amount_sat,
                    "maxppm": cfg.ppm_min,
                    "direction": direction,
                    "candidates": list(candidates),
                    "target": float(target),
                },
            )
            plans.append(SlingPlan(
                short_channel_id=meta.short_channel_id,
                alias=meta.alias,
                action=action,
                balance=meta.fund.balance_ratio,
                forwards=meta.ever_fwd_total,
                is_sink=meta.is_sink,
            ))
        return plans

    # =========================================================================
    # EXECUTION
    # =========================================================================

    def run(self, jobs: bool = False) -> Dict[str, Any]:
        """
        Plan every action first, then execute or log them in order.

        Args:
            jobs: Use the legacy sling-job planner instead of sling-once
        """
        plans = self.plan_jobs() if jobs else self.plan_pull_once()
        actions = [p.action for p in plans]
        contexts = [p.details() for p in plans]
        if jobs:
            actions = [Action(SLING_DELETEJOB, {"job": "all"})] + actions + [Action(SLING_GO)]
            contexts = [""] + contexts + [""]

        results = [self.executor.execute(a, c) for a, c in zip(actions, contexts)]
        failed = sum(1 for r in results if not r.success)
        self.plugin.log(
            f"Sling pass ({'jobs' if jobs else 'once'}): {len(plans)} planned, {failed} failed"
        )
        return {
            "mode": "jobs" if jobs else "once",
            "planned": len(plans),
            "failed": failed,
            "executed": self.config.execute_sling,
            "plans": [p.to_dict() for p in plans],
            "results": [r.to_dict() for r in results],
        }
