"""
Tests for the sling rebalance planner.

Tests:
- factor and max_ppm rules
- one-shot pull planning over a mixed inventory
- idempotence over an unchanged snapshot
- the legacy sling-job planner
"""

import pytest

from conftest import PEER_B, PEER_C, PEER_D, SnapshotBuilder

from lightdash.config import Config
from lightdash.executor import ActionExecutor
from lightdash.rebalancer import SlingPlanner, sling_factor, sling_max_ppm


A = "700000x1x0"
B = "710000x1x0"
C = "720000x1x0"


def planner(store, plugin, config=None):
    config = config or store.config
    return SlingPlanner(plugin, config, store, ActionExecutor(plugin, config))


@pytest.fixture
def mixed():
    """A drained expensive channel, a full cheap one and a balanced one."""
    s = SnapshotBuilder()
    s.add_channel(A, PEER_B, 1_000_000_000, 50_000_000, our_ppm=1000)
    s.add_channel(B, PEER_C, 1_000_000_000, 900_000_000, our_ppm=150)
    s.add_channel(C, PEER_D, 1_000_000_000, 500_000_000, our_ppm=200)
    for _ in range(5):
        s.add_forward(A, "9x9x9")
    return s


class TestFactor:
    """Test the max ppm budget."""

    def test_factor(self):
        assert sling_factor(0) == 23
        assert sling_factor(5) == 18
        assert sling_factor(20) == 3
        assert sling_factor(500) == 3

    def test_max_ppm(self):
        assert sling_max_ppm(1000, 300, 5) == 38

    def test_max_ppm_never_negative(self):
        """A target cheaper than the source limit gets a zero budget."""
        assert sling_max_ppm(100, 300, 0) == 0


class TestPullOnce:
    """Test the one-shot pull planner."""

    def test_candidates(self, mixed, load_store):
        """Only cheap channels above the candidate balance qualify."""
        store, plugin = load_store(mixed)
        assert planner(store, plugin).find_candidates() == [B]

    def test_mixed_inventory(self, mixed, load_store):
        """One pull into A from B with a budget of 38 ppm."""
        store, plugin = load_store(mixed)
        [plan] = planner(store, plugin).plan_pull_once()
        assert plan.short_channel_id == A
        assert plan.forwards == 5
        assert plan.action.method == "sling-once"
        assert plan.action.params == {
            "scid": A, "direction": "pull", "candidates": [B],
            "maxppm": 38, "amount": 100_000, "onceamount": 100_000,
        }
        assert plan.action.cli_args() == [
            "-k", "sling-once", f"scid={A}", "direction=pull", f'candidates=["{B}"]',
            "maxppm=38", "amount=100000", "onceamount=100000",
        ]

    def test_no_candidates(self, load_store):
        """Without candidates nothing is planned."""
        s = SnapshotBuilder()
        s.add_channel(A, PEER_B, 1_000_000, 10_000, our_ppm=1000)
        store, plugin = load_store(s)
        assert planner(store, plugin).plan_pull_once() == []

    def test_target_without_edge_skipped(self, mixed, load_store):
        """A target missing from the gossip graph is skipped with a warning."""
        mixed.add_channel("730000x1x0", PEER_D, 1_000_000, 0, announce_ours=False)
        store, plugin = load_store(mixed)
        plans = planner(store, plugin).plan_pull_once()
        assert [p.short_channel_id for p in plans] == [A]
        levels = [c.kwargs.get("level") for c in plugin.log.call_args_list]
        assert "warn" in levels

    def test_dry_run(self, mixed, load_store):
        """With execute_sling off nothing reaches the node."""
        store, plugin = load_store(mixed)
        result = planner(store, plugin).run()
        assert result["planned"] == 1
        assert result["results"][0]["executed"] is False
        assert plugin.rpc.calls_to("sling-once") == []

    def test_executes_when_enabled(self, mixed, load_store):
        store, plugin = load_store(mixed)
        planner(store, plugin, Config(execute_sling=True)).run()
        [call] = plugin.rpc.calls_to("sling-once")
        assert call["scid"] == A
        assert call["maxppm"] == 38


class TestIdempotence:
    """Test that plans depend only on the snapshot."""

    def test_same_snapshot_same_actions(self, mixed, load_store):
        mixed.add_channel("690000x1x0", PEER_D, 1_000_000_000, 0, our_ppm=2000)
        store, plugin = load_store(mixed)
        first = [p.action.to_dict() for p in planner(store, plugin).plan_pull_once()]
        second = [p.action.to_dict() for p in planner(store, plugin).plan_pull_once()]
        assert first == second
        assert [a["params"]["scid"] for a in first] == ["690000x1x0", A]


class TestJobs:
    """Test the legacy sling-job planner."""

    def test_jobs_sequence(self, load_store):
        """deletejob, one job per classified channel, then go."""
        s = SnapshotBuilder()
        s.add_channel(A, PEER_B, 1_000_000, 100_000)
        s.add_channel(B, PEER_C, 1_000_000, 900_000)
        s.add_channel(C, PEER_D, 1_000_000, 500_000)
        store, plugin = load_store(s)
        result = planner(store, plugin).run(jobs=True)

        assert result["mode"] == "jobs"
        assert result["planned"] == 2
        methods = [r["action"]["method"] for r in result["results"]]
        assert methods == ["sling-deletejob", "sling-job", "sling-job", "sling-go"]

        pull, push = result["plans"]
        assert pull["action"]["params"] == {
            "scid": A, "amount": 50_000, "maxppm": 10, "direction": "pull",
            "candidates": [B], "target": 0.3,
        }
        assert push["action"]["params"]["direction"] == "push"
        assert push["action"]["params"]["candidates"] == [A]
        assert push["action"]["command"].endswith("target=0.70")
