"""
Metrics module for cl-lightdash

Pure functions over snapshot records. Nothing here talks to the node;
the Store feeds these functions its parsed documents and the snapshot
timestamp, so every window is relative to the same instant.

Channel flow classification:
- is_sink = out / (in + out): 1.0 means every forward left through the
  channel (a sink for our liquidity), 0.0 means every forward entered
  through it (a source). With no forwards it is exactly 0.5.
- PullIn: low balance and sinking last month, wants liquidity back
- PushOut: high balance and sourcing last month, wants to shed liquidity

Yield:
- APY is fee income over a window of months, linearly extrapolated to a
  year and expressed as a percentage of the funds we hold in channels.
"""

import statistics
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .models import (
    Channel, Forward, Fund, SettledForward,
    FORWARD_FAILED, FORWARD_LOCAL_FAILED, FORWARD_SETTLED,
)


DAY_SECONDS = 86400
HOUR_SECONDS = 3600
BLOCKS_PER_DAY = 144

# Fee-distribution buckets in ppm, inclusive bounds
FEE_BUCKETS: List[Tuple[int, int]] = [
    (0, 1), (2, 3), (4, 5), (6, 7), (8, 10),
    (11, 30), (31, 50), (51, 70), (71, 100), (101, 300),
    (301, 500), (501, 700), (701, 1000), (1001, 3000), (3001, 5000),
]

APY_MONTHS = (1, 3, 6, 12)

FORWARD_WINDOWS: Dict[str, int] = {
    "day": 1,
    "week": 7,
    "month": 30,
}

# Edges excluded from network fee statistics
MAX_REASONABLE_PPM = 10_000


class Rebalance(Enum):
    """Rebalance intent of an owned channel."""
    PULL_IN = "pull"
    PUSH_OUT = "push"
    NOTHING = ""


@dataclass
class ChannelFee:
    """Aggregate of the outgoing edges of one node."""
    count: int = 0
    fee_sum: int = 0
    fee_rates: Set[int] = field(default_factory=set)

    def add(self, fee_per_millionth: int) -> None:
        self.count += 1
        self.fee_sum += fee_per_millionth
        self.fee_rates.add(fee_per_millionth)

    @property
    def avg_fee(self) -> float:
        if self.count == 0:
            return 0.0
        return self.fee_sum / self.count

    @property
    def fee_diversity(self) -> float:
        """Distinct fee rates per edge; 1.0 means every edge is priced differently."""
        if self.count == 0:
            return 0.0
        return len(self.fee_rates) / self.count


@dataclass
class ChannelCounters:
    """
    Per short_channel_id counters from one sweep over settled forwards.

    ever_fee_sat_in is accumulated negatively: fees earned on forwards that
    entered through a channel are booked against it as a sink.
    """
    ever_fwd_in: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    ever_fwd_out: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    last_week_fwd_in: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    last_week_fwd_out: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    last_month_fwd_in: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    last_month_fwd_out: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    last_year_fwd_in: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    last_year_fwd_out: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    ever_fee_sat_out: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    ever_fee_sat_in: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    last_month_fee_sat_out: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    last_resolved_in: Dict[str, float] = field(default_factory=dict)
    last_resolved_out: Dict[str, float] = field(default_factory=dict)

    def ever_total(self, scid: str) -> int:
        return self.ever_fwd_in.get(scid, 0) + self.ever_fwd_out.get(scid, 0)

    def last_resolved(self, scid: str) -> Optional[float]:
        times = [t for t in (self.last_resolved_in.get(scid), self.last_resolved_out.get(scid))
                 if t is not None]
        return max(times) if times else None


def compute_channel_counters(settled: Iterable[SettledForward], now: float) -> ChannelCounters:
    """Single sweep over settled forwards filling every per-channel counter."""
    c = ChannelCounters()
    week_start = now - 7 * DAY_SECONDS
    month_start = now - 30 * DAY_SECONDS
    year_start = now - 365 * DAY_SECONDS

    for s in settled:
        c.ever_fwd_in[s.in_channel] += 1
        c.ever_fwd_out[s.out_channel] += 1
        c.ever_fee_sat_out[s.out_channel] += s.fee_sat
        c.ever_fee_sat_in[s.in_channel] -= s.fee_sat

        if s.resolved_time >= year_start:
            c.last_year_fwd_in[s.in_channel] += 1
            c.last_year_fwd_out[s.out_channel] += 1
        if s.resolved_time >= month_start:
            c.last_month_fwd_in[s.in_channel] += 1
            c.last_month_fwd_out[s.out_channel] += 1
            c.last_month_fee_sat_out[s.out_channel] += s.fee_sat
        if s.resolved_time >= week_start:
            c.last_week_fwd_in[s.in_channel] += 1
            c.last_week_fwd_out[s.out_channel] += 1

        if s.resolved_time > c.last_resolved_in.get(s.in_channel, float('-inf')):
            c.last_resolved_in[s.in_channel] = s.resolved_time
        if s.resolved_time > c.last_resolved_out.get(s.out_channel, float('-inf')):
            c.last_resolved_out[s.out_channel] = s.resolved_time
    return c


def sink_ratio(fwd_in: int, fwd_out: int) -> float:
    """Outward share of forwards; 0.5 (neutral) when there are none."""
    total = fwd_in + fwd_out
    if total == 0:
        return 0.5
    return fwd_out / total


def classify_rebalance(balance: float, is_sink_last_month: float,
                       pull_in_balance: float = 0.3,
                       push_out_balance: float = 0.7) -> Rebalance:
    if balance < pull_in_balance and is_sink_last_month >= 0.5:
        return Rebalance.PULL_IN
    if balance > push_out_balance and is_sink_last_month <= 0.5:
        return Rebalance.PUSH_OUT
    return Rebalance.NOTHING


def channel_age_blocks(current_block: int, block_born: Optional[int]) -> int:
    """Saturating block age, lower-bounded at 1."""
    if block_born is None:
        return 1
    return max(current_block - block_born, 1)


def gain_per_block(fee_sat_out: int, fee_sat_in: int,
                   current_block: int, block_born: Optional[int]) -> int:
    """
    Millisats gained per block since the channel was funded.

    A millisat counts as gained both when it is earned as outgoing fee and
    when the channel brought in a forward that earned a fee elsewhere.
    """
    blocks = channel_age_blocks(current_block, block_born)
    return int(abs(fee_sat_out - fee_sat_in) * 1000 / blocks)


@dataclass
class ChannelMeta:
    """Derived lifecycle metrics of one owned channel."""
    fund: Fund
    alias: str
    is_sink: float
    is_sink_last_month: float
    rebalance: Rebalance
    block_born: int
    gain_per_block: int
    ever_fwd_in: int
    ever_fwd_out: int
    last_month_fwd: int
    last_month_fee_sat: int
    ever_fee_sat_out: int
    ever_fee_sat_in: int

    @property
    def short_channel_id(self) -> str:
        return self.fund.scid

    @property
    def ever_fwd_total(self) -> int:
        return self.ever_fwd_in + self.ever_fwd_out

    def is_sink_perc(self) -> str:
        return f"{self.is_sink * 100:.0f}%"

    def is_sink_last_month_perc(self) -> str:
        return f"{self.is_sink_last_month * 100:.0f}%"


def build_channel_meta(fund: Fund, counters: ChannelCounters, alias: str,
                       current_block: int, pull_in_balance: float = 0.3,
                       push_out_balance: float = 0.7) -> ChannelMeta:
    scid = fund.scid
    is_sink = sink_ratio(counters.ever_fwd_in.get(scid, 0), counters.ever_fwd_out.get(scid, 0))
    is_sink_last_month = sink_ratio(counters.last_month_fwd_in.get(scid, 0),
                                    counters.last_month_fwd_out.get(scid, 0))
    fee_out = counters.ever_fee_sat_out.get(scid, 0)
    fee_in = counters.ever_fee_sat_in.get(scid, 0)
    return ChannelMeta(
        fund=fund,
        alias=alias,
        is_sink=is_sink,
        is_sink_last_month=is_sink_last_month,
        rebalance=classify_rebalance(fund.balance_ratio, is_sink_last_month,
                                     pull_in_balance, push_out_balance),
        block_born=fund.block_born or 0,
        gain_per_block=gain_per_block(fee_out, fee_in, current_block, fund.block_born),
        ever_fwd_in=counters.ever_fwd_in.get(scid, 0),
        ever_fwd_out=counters.ever_fwd_out.get(scid, 0),
        last_month_fwd=counters.last_month_fwd_out.get(scid, 0),
        last_month_fee_sat=counters.last_month_fee_sat_out.get(scid, 0),
        ever_fee_sat_out=fee_out,
        ever_fee_sat_in=fee_in,
    )


# =============================================================================
# YIELD
# =============================================================================

def fees_earned_last_months(settled: Iterable[SettledForward], now: float, months: int) -> int:
    """Fee sats of settled forwards resolved at most months*30 days ago."""
    horizon = months * 30 * DAY_SECONDS
    return sum(s.fee_sat for s in settled if now - s.resolved_time <= horizon)


def apy_percent(fees_sat: int, months: int, total_funds_sat: int) -> float:
    if total_funds_sat <= 0 or months <= 0:
        return 0.0
    return fees_sat * 100 * (12 / months) / total_funds_sat


@dataclass
class ApyData:
    """Fees and annualised yield over the standard 1/3/6/12 month windows."""
    total_funds_sat: int
    fees_sat: Dict[int, int]
    apy: Dict[int, float]
    transacted_last_month_sat: int

    @classmethod
    def compute(cls, settled: Sequence[SettledForward], now: float,
                total_funds_sat: int) -> "ApyData":
        fees = {m: fees_earned_last_months(settled, now, m) for m in APY_MONTHS}
        apy = {m: apy_percent(fees[m], m, total_funds_sat) for m in APY_MONTHS}
        month_start = now - 30 * DAY_SECONDS
        transacted = sum(s.out_sat for s in settled if s.resolved_time >= month_start)
        return cls(
            total_funds_sat=total_funds_sat,
            fees_sat=fees,
            apy=apy,
            transacted_last_month_sat=transacted,
        )

    def to_dict(self) -> Dict[str, object]:
        return {
            "total_funds_sat": self.total_funds_sat,
            "fees_sat": {f"{m}m": v for m, v in self.fees_sat.items()},
            "apy_percent": {f"{m}m": round(v, 4) for m, v in self.apy.items()},
            "transacted_last_month_sat": self.transacted_last_month_sat,
        }


# =============================================================================
# FORWARD STATISTICS
# =============================================================================

@dataclass
class ForwardStatistics:
    """Status counts of all forwards in one window."""
    window: str
    days: int
    settled: int = 0
    failed: int = 0
    local_failed: int = 0
    other: int = 0

    @property
    def total(self) -> int:
        return self.settled + self.failed + self.local_failed + self.other

    def ratio(self, count: int) -> float:
        if self.total == 0:
            return 0.0
        return count / self.total

    @property
    def success_ratio(self) -> float:
        return self.ratio(self.settled)

    def per_day(self, count: int) -> float:
        return count / self.days

    def to_dict(self) -> Dict[str, object]:
        return {
            "window": self.window,
            "settled": self.settled,
            "failed": self.failed,
            "local_failed": self.local_failed,
            "other": self.other,
            "total": self.total,
            "success_ratio": round(self.success_ratio, 4),
            "settled_per_day": round(self.per_day(self.settled), 2),
            "total_per_day": round(self.per_day(self.total), 2),
        }


def forward_statistics(forwards: Iterable[Forward], now: float) -> Dict[str, ForwardStatistics]:
    stats = {name: ForwardStatistics(window=name, days=days)
             for name, days in FORWARD_WINDOWS.items()}
    for f in forwards:
        age = now - f.event_time
        for name, days in FORWARD_WINDOWS.items():
            if age > days * DAY_SECONDS:
                continue
            s = stats[name]
            if f.status == FORWARD_SETTLED:
                s.settled += 1
            elif f.status == FORWARD_FAILED:
                s.failed += 1
            elif f.status == FORWARD_LOCAL_FAILED:
                s.local_failed += 1
            else:
                s.other += 1
    return stats


def forwards_by_weekday(settled: Iterable[SettledForward]) -> List[int]:
    """Settled forwards per UTC weekday of resolution, indexed Sunday..Saturday."""
    buckets = [0] * 7
    for s in settled:
        # datetime.weekday() is Monday=0
        buckets[(s.resolved_datetime.weekday() + 1) % 7] += 1
    return buckets


def settled_frequency(settled: Sequence[SettledForward], now: float) -> Dict[str, float]:
    """Settled forwards per day, ever and over the last year, month and week."""
    if not settled:
        return {"ever": 0.0, "year": 0.0, "month": 0.0, "week": 0.0}
    first = min(s.resolved_time for s in settled)
    elapsed_days = max(int((now - first) // DAY_SECONDS), 1)

    def count_within(days: int) -> int:
        return sum(1 for s in settled if now - s.resolved_time < days * DAY_SECONDS)

    return {
        "ever": len(settled) / elapsed_days,
        "year": count_within(365) / 365.0,
        "month": count_within(30) / 30.0,
        "week": count_within(7) / 7.0,
    }


# =============================================================================
# FEE STATISTICS
# =============================================================================

def fee_bucket_index(ppm: int) -> Optional[int]:
    """Index of the fee bucket holding ppm, None above the last bucket."""
    for index, (low, high) in enumerate(FEE_BUCKETS):
        if low <= ppm <= high:
            return index
    return None


def fee_distribution(edges: Iterable[Channel]) -> List[int]:
    """Capacity in sats per fee bucket."""
    buckets = [0] * len(FEE_BUCKETS)
    for edge in edges:
        index = fee_bucket_index(edge.fee_per_millionth)
        if index is not None:
            buckets[index] += edge.amount_msat // 1000
    return buckets


def fee_histogram(edges: Iterable[Channel]) -> List[int]:
    """Number of edges per fee bucket."""
    buckets = [0] * len(FEE_BUCKETS)
    for edge in edges:
        index = fee_bucket_index(edge.fee_per_millionth)
        if index is not None:
            buckets[index] += 1
    return buckets


def is_reasonable_fee(edge: Channel) -> bool:
    return edge.base_fee_msat == 0 and edge.fee_per_millionth <= MAX_REASONABLE_PPM


def mean_median(values: Sequence[float]) -> Tuple[float, float]:
    if not values:
        return 0.0, 0.0
    return float(statistics.mean(values)), float(statistics.median(values))


def mean_variance(values: Sequence[float]) -> Tuple[float, float]:
    """Mean and sample variance; variance is 0 with fewer than two values."""
    if not values:
        return 0.0, 0.0
    mean = statistics.mean(values)
    if len(values) < 2:
        return float(mean), 0.0
    return float(mean), float(statistics.variance(values))


# =============================================================================
# DISPLAY HELPERS
# =============================================================================

def cut_days(days: int) -> str:
    if days > 99:
        return "99+"
    return f"{days:>2}d"


def format_duration(seconds: float) -> str:
    total = abs(int(seconds))
    days = total // 86400
    hours = (total % 86400) // 3600
    minutes = (total % 3600) // 60
    secs = total % 60
    if days > 0:
        return f"{days}d {hours}h {minutes}m"
    if hours > 0:
        return f"{hours}h {minutes}m {secs}s"
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"
