"""
Tests for the metrics layer.

Tests:
- per-channel counters and windows
- sink ratio, rebalance classification, gain per block
- APY and forward statistics
- fee buckets and display helpers
"""

import pytest

from conftest import DAY, HOUR, NOW

from lightdash.metrics import (
    ApyData, ChannelFee, Rebalance, apy_percent, channel_age_blocks,
    classify_rebalance, compute_channel_counters, cut_days, fee_bucket_index,
    fee_distribution, fees_earned_last_months, format_duration, forward_statistics,
    forwards_by_weekday, gain_per_block, mean_median, mean_variance, sink_ratio,
)
from lightdash.models import Channel, Forward, SettledForward


def settled(in_channel="1x1x0", out_channel="2x2x0", fee_msat=5_000, out_msat=1_000_000,
            resolved_time=NOW - HOUR):
    return SettledForward(in_channel=in_channel, out_channel=out_channel,
                          in_msat=out_msat + fee_msat, out_msat=out_msat, fee_msat=fee_msat,
                          received_time=resolved_time - 1, resolved_time=resolved_time)


def edge(ppm, amount_msat=1_000_000_000, base=0):
    return Channel(short_channel_id="1x1x1", source="a", destination="b", amount_msat=amount_msat,
                   active=True, last_update=NOW, base_fee_msat=base, fee_per_millionth=ppm,
                   delay=144, htlc_min_msat=0, htlc_max_msat=amount_msat)


class TestChannelCounters:
    """Test the single sweep over settled forwards."""

    def test_ever_and_windows(self):
        """Counts split by direction and by 7/30/365-day windows."""
        forwards = [
            settled(resolved_time=NOW - DAY),
            settled(resolved_time=NOW - 10 * DAY),
            settled(resolved_time=NOW - 100 * DAY),
            settled(resolved_time=NOW - 400 * DAY),
        ]
        c = compute_channel_counters(forwards, NOW)
        assert c.ever_fwd_in["1x1x0"] == 4
        assert c.ever_fwd_out["2x2x0"] == 4
        assert c.last_week_fwd_out["2x2x0"] == 1
        assert c.last_month_fwd_out["2x2x0"] == 2
        assert c.last_year_fwd_out["2x2x0"] == 3

    def test_fee_signs(self):
        """Outgoing fees are positive, incoming fees are booked negatively."""
        c = compute_channel_counters([settled(fee_msat=5_000), settled(fee_msat=3_000)], NOW)
        assert c.ever_fee_sat_out["2x2x0"] == 8
        assert c.ever_fee_sat_in["1x1x0"] == -8

    def test_last_resolved(self):
        """The latest resolution per direction is kept."""
        c = compute_channel_counters([settled(resolved_time=NOW - 50),
                                      settled(resolved_time=NOW - 10)], NOW)
        assert c.last_resolved_out["2x2x0"] == NOW - 10
        assert c.last_resolved("2x2x0") == NOW - 10
        assert c.last_resolved("9x9x9") is None

    def test_window_counts_match_channel_forwards(self):
        """In plus out counts equal the forwards touching a channel."""
        forwards = [settled("1x1x0", "2x2x0"), settled("2x2x0", "3x3x0"), settled("3x3x0", "1x1x0")]
        c = compute_channel_counters(forwards, NOW)
        touching = [f for f in forwards if f.touches("2x2x0")]
        assert c.ever_total("2x2x0") == len(touching)


class TestSinkAndRebalance:
    """Test flow classification."""

    def test_sink_ratio_no_forwards(self):
        """Zero forwards is exactly neutral."""
        assert sink_ratio(0, 0) == 0.5

    def test_sink_ratio(self):
        """Outward share of forwards."""
        assert sink_ratio(1, 3) == 0.75

    def test_pull_in(self):
        """Low balance and sinking last month pulls in."""
        assert classify_rebalance(0.2, 0.5) == Rebalance.PULL_IN

    def test_push_out(self):
        """High balance and sourcing last month pushes out."""
        assert classify_rebalance(0.8, 0.5) == Rebalance.PUSH_OUT

    def test_nothing(self):
        """Balanced channels need nothing."""
        assert classify_rebalance(0.5, 0.9) == Rebalance.NOTHING
        assert classify_rebalance(0.2, 0.3) == Rebalance.NOTHING


class TestGainPerBlock:
    """Test gain per block."""

    def test_age_lower_bound(self):
        """Age is at least one block, even for future or unknown births."""
        assert channel_age_blocks(100, 200) == 1
        assert channel_age_blocks(100, None) == 1

    def test_gain(self):
        """Fee sats in and out over the block age, in msat."""
        # |10 - (-10)| * 1000 / 100
        assert gain_per_block(10, -10, 1100, 1000) == 200


class TestApy:
    """Test yield computation."""

    def test_empty_forwards(self):
        """No forwards give zero fees, zero APY and nothing transacted."""
        apy = ApyData.compute([], NOW, 10_000_000)
        assert all(v == 0 for v in apy.fees_sat.values())
        assert all(v == 0.0 for v in apy.apy.values())
        assert apy.transacted_last_month_sat == 0
        assert sorted(apy.fees_sat) == [1, 3, 6, 12]

    def test_zero_funds(self):
        """APY is 0 without funds and for a zero window."""
        assert apy_percent(100, 1, 0) == 0.0
        assert apy_percent(100, 0, 1000) == 0.0

    def test_apy_formula(self):
        """fees * 100 * 12 / m / funds."""
        assert apy_percent(1000, 1, 1_200_000) == pytest.approx(1.0)

    def test_window_boundaries(self):
        """A forward 45 days old counts for 3 months but not 1."""
        forwards = [settled(fee_msat=7_000, resolved_time=NOW - 45 * DAY)]
        assert fees_earned_last_months(forwards, NOW, 1) == 0
        assert fees_earned_last_months(forwards, NOW, 3) == 7

    def test_transacted_last_month(self):
        """Outgoing sats of the last 30 days are summed."""
        forwards = [settled(out_msat=2_000_000), settled(out_msat=5_000_000, resolved_time=NOW - 40 * DAY)]
        assert ApyData.compute(forwards, NOW, 1).transacted_last_month_sat == 2_000


class TestForwardStatistics:
    """Test status counts per window."""

    def _forward(self, status, age):
        return Forward(in_channel="1x1x0", in_msat=1000, status=status,
                       received_time=NOW - age, out_channel="2x2x0", resolved_time=NOW - age)

    def test_windows(self):
        """Each forward counts in every window that contains it."""
        stats = forward_statistics([
            self._forward("settled", HOUR),
            self._forward("failed", 2 * DAY),
            self._forward("local_failed", 10 * DAY),
            self._forward("offered", HOUR),
        ], NOW)
        assert stats["day"].settled == 1
        assert stats["day"].other == 1
        assert stats["day"].total == 2
        assert stats["week"].failed == 1
        assert stats["month"].local_failed == 1
        assert stats["month"].total == 4
        assert stats["day"].success_ratio == 0.5

    def test_empty(self):
        """Empty windows have a zero success ratio."""
        stats = forward_statistics([], NOW)
        assert stats["week"].success_ratio == 0.0
        assert stats["week"].per_day(14) == 2.0


class TestWeekday:
    """Test the weekday histogram."""

    def test_buckets_sum(self):
        """Seven buckets summing to the number of settled forwards."""
        forwards = [settled(resolved_time=NOW - i * DAY) for i in range(10)]
        buckets = forwards_by_weekday(forwards)
        assert len(buckets) == 7
        assert sum(buckets) == 10

    def test_sunday_first(self):
        """2023-11-14 (NOW) is a Tuesday, index 2."""
        assert forwards_by_weekday([settled(resolved_time=NOW)]) == [0, 0, 1, 0, 0, 0, 0]


class TestFeeStatistics:
    """Test fee buckets and averages."""

    def test_bucket_bounds(self):
        """Bucket bounds are inclusive."""
        assert fee_bucket_index(0) == 0
        assert fee_bucket_index(1) == 0
        assert fee_bucket_index(10) == 4
        assert fee_bucket_index(11) == 5
        assert fee_bucket_index(5000) == 14
        assert fee_bucket_index(5001) is None

    def test_distribution_sums_capacity(self):
        """Capacity in sats is summed per bucket."""
        buckets = fee_distribution([edge(1), edge(1), edge(200, amount_msat=5_000_000)])
        assert buckets[0] == 2_000_000
        assert buckets[9] == 5_000
        assert len(buckets) == 15

    def test_channel_fee(self):
        """Average and diversity of a node's outgoing fees."""
        meta = ChannelFee()
        for ppm in (100, 100, 200, 400):
            meta.add(ppm)
        assert meta.avg_fee == 200
        assert meta.fee_diversity == 0.75
        assert ChannelFee().avg_fee == 0.0

    def test_mean_median(self):
        """Mean and median; zeros when empty."""
        assert mean_median([1, 2, 9]) == (4.0, 2.0)
        assert mean_median([]) == (0.0, 0.0)

    def test_mean_variance_single(self):
        """A single value has zero variance."""
        assert mean_variance([0.4]) == (0.4, 0.0)


class TestDisplayHelpers:
    """Test formatting helpers."""

    def test_cut_days(self):
        """Days above 99 collapse to 99+."""
        assert cut_days(5) == " 5d"
        assert cut_days(99) == "99d"
        assert cut_days(100) == "99+"

    def test_format_duration(self):
        """The largest non-zero unit picks the format."""
        assert format_duration(4) == "4s"
        assert format_duration(3 * 60 + 4) == "3m 4s"
        assert format_duration(2 * HOUR + 3 * 60 + 4) == "2h 3m 4s"
        assert format_duration(DAY + 2 * HOUR + 3 * 60) == "1d 2h 3m"
        assert format_duration(-4) == "4s"
