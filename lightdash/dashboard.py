"""
Static HTML dashboard for cl-lightdash

Thin presentation of the metrics the Store already computed. Every page
is produced from PAGE_TEMPLATE, every interpolated string goes through
html.escape, and absent values render as "-" (or "N/A" for identifiers).

Pages written under the output directory:
- index.html                node summary, channel table, inactive channels
- nodes/<node_id>.html      peers (plus well connected nodes on request)
- channels/<scid>.html      one page per owned channel
- forwards-week.html        settled forwards of the last 7 days
- failures.html             failed and local_failed forwards
- apy.html                  yield over 1/3/6/12 months
- closed-channels.html      historical channels
- routes-<amount_sat>.html  routing centrality (routes command)

Files are written whole; directories are created when missing.
"""

import html
import json
import os
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .config import Config
from .metrics import (
    APY_MONTHS, DAY_SECONDS, FEE_BUCKETS, cut_days, format_duration,
)
from .models import timestamp_to_datetime
from .node import SnapshotLoadError


PAGE_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<title>{title}</title>
<style>
body {{ font-family: 'Courier New', monospace; background-color: #1e1e1e; color: #f8f8f2; margin: 0; padding: 20px; }}
.container {{ max-width: 1400px; margin: 0 auto; }}
.header {{ background-color: #2c3e50; padding: 20px; border-radius: 8px; margin-bottom: 20px; text-align: center; }}
section {{ background-color: #2d3748; padding: 20px; border-radius: 8px; margin-bottom: 20px; overflow-x: auto; }}
a {{ color: #63b3ed; text-decoration: none; }}
table {{ width: 100%; border-collapse: collapse; }}
th, td {{ border: 1px solid #4a5568; padding: 4px 8px; text-align: left; }}
th {{ color: #63b3ed; }}
.align-right {{ text-align: right; }}
footer {{ text-align: center; color: #a0aec0; margin-top: 30px; }}
</style>
</head>
<body>
<div class="container">
<div class="header">
<h1>{title}</h1>
<div>{nav}</div>
</div>
{body}
<footer>Generated at: {generated}</footer>
</div>
</body>
</html>
"""

NAV_LINKS = [
    ("index.html", "Home"),
    ("forwards-week.html", "Forwards"),
    ("routes-10000.html", "Routes"),
    ("failures.html", "Failures"),
    ("apy.html", "APY"),
    ("closed-channels.html", "Closed"),
]

WEEKDAYS = ["Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat"]

MAX_LISTED_FORWARDS = 200


# =============================================================================
# HTML HELPERS
# =============================================================================

def esc(value: Any) -> str:
    """Escape a value for HTML; None becomes '-'."""
    if value is None:
        return "-"
    return html.escape(str(value))


def link(href: str, text: Any) -> str:
    return f'<a href="{html.escape(href, quote=True)}">{esc(text)}</a>'


def table(headers: Sequence[str], rows: Iterable[Sequence[Any]], raw_columns: Sequence[int] = ()) -> str:
    """
    Render a table; cells in raw_columns are trusted HTML (links), the
    rest are escaped.
    """
    head = "".join(f"<th>{esc(h)}</th>" for h in headers)
    body = []
    for row in rows:
        cells = []
        for index, cell in enumerate(row):
            content = cell if index in raw_columns else esc(cell)
            cells.append(f"<td>{content}</td>")
        body.append("<tr>" + "".join(cells) + "</tr>")
    return f"<table><thead><tr>{head}</tr></thead><tbody>{''.join(body)}</tbody></table>"


def section(title: str, content: str) -> str:
    return f"<section><h2>{esc(title)}</h2>{content}</section>"


def fmt_time(timestamp: Optional[float]) -> str:
    moment = timestamp_to_datetime(timestamp)
    if moment is None:
        return "-"
    return moment.strftime("%Y-%m-%d %H:%M:%S")


def fmt_perc(ratio: float) -> str:
    return f"{ratio * 100:.1f}%"


def days_since(now: float, timestamp: Optional[float]) -> Optional[str]:
    if timestamp is None:
        return None
    return cut_days(int(max(now - timestamp, 0) // DAY_SECONDS))


def bucket_label(index: int) -> str:
    low, high = FEE_BUCKETS[index]
    return f"{low}-{high}"


def render_page(title: str, body: str, now: float, depth: int = 0) -> str:
    prefix = "../" * depth
    nav = " | ".join(link(prefix + href, text) for href, text in NAV_LINKS)
    return PAGE_TEMPLATE.format(
        title=esc(title), nav=nav, body=body, generated=esc(fmt_time(now) + " UTC"))


# =============================================================================
# NODE UPTIME FILE
# =============================================================================

def load_availability(path: str, plugin) -> Dict[str, float]:
    """
    Read a {node_id: fraction} JSON object.

    Entries whose value is not a number in [0, 1] are skipped with a
    warning. An unreadable file raises SnapshotLoadError.
    """
    try:
        with open(path, 'r', encoding='utf-8') as f:
            raw = json.load(f)
    except (OSError, ValueError) as e:
        raise SnapshotLoadError(path, str(e))
    if not isinstance(raw, dict):
        raise SnapshotLoadError(path, "expected a JSON object of node_id -> availability")

    availability = {}
    for node_id, value in raw.items():
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not 0 <= value <= 1:
            plugin.log(f"Ignoring invalid availability {value!r} for {node_id}", level='warn')
            continue
        availability[node_id] = float(value)
    return availability


# =============================================================================
# DASHBOARD
# =============================================================================

class Dashboard:
    """Writes the static pages for one Store."""

    def __init__(self, plugin, config: Config, store, output_dir: str,
                 availability: Optional[Dict[str, float]] = None,
                 min_channels: Optional[int] = None):
        self.plugin = plugin
        self.config = config
        self.store = store
        self.output_dir = output_dir
        self.availability = availability or {}
        self.min_channels = min_channels
        self.written: List[str] = []

    def write_page(self, relpath: str, title: str, body: str) -> str:
        path = os.path.join(self.output_dir, relpath)
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        depth = relpath.count("/")
        with open(path, 'w', encoding='utf-8') as f:
            f.write(render_page(title, body, self.store.now, depth))
        self.written.append(path)
        return path

    def generate(self) -> List[str]:
        """Write every dashboard page and return the written paths."""
        self.written = []
        metas = self.store.channel_metas()
        self.write_page("index.html", "Lightning Dashboard", self.index_body(metas))
        for meta in metas:
            self.write_page(f"channels/{meta.short_channel_id}.html",
                            f"Channel {meta.short_channel_id}", self.channel_body(meta))
        for node_id in self.node_page_ids():
            self.write_page(f"nodes/{node_id}.html", self.store.get_node_alias(node_id),
                            self.node_body(node_id))
        self.write_page("forwards-week.html", "Forwards (last week)", self.forwards_week_body())
        self.write_page("failures.html", "Failures", self.failures_body())
        self.write_page("apy.html", "APY", self.apy_body())
        self.write_page("closed-channels.html", "Closed Channels", self.closed_channels_body())
        self.plugin.log(f"Dashboard written to {self.output_dir} ({len(self.written)} pages)")
        return list(self.written)

    def node_page_ids(self) -> List[str]:
        ids = set(self.store.peers_ids())
        if self.min_channels:
            for node_id, meta in self.store.chan_meta_per_node().items():
                if meta.count >= self.min_channels:
                    ids.add(node_id)
        return sorted(ids)

    # =========================================================================
    # INDEX
    # =========================================================================

    def index_body(self, metas) -> str:
        store = self.store
        summary = store.node_summary()
        freq = summary["settled_frequency"]
        last_run = (format_duration(store.now - store.last_run) + " ago"
                    if store.last_run is not None else None)
        node_rows = [
            ("id", summary["id"]),
            ("alias", summary["alias"]),
            ("block height", summary["blockheight"]),
            ("network channels / nodes", f"{summary['network_channels']} / {summary['network_nodes']}"),
            ("peers / normal channels", f"{summary['peers']} / {summary['normal_channels']}"),
            ("forwards settled", f"{summary['forwards_settled']}/{summary['forwards_total']} "
                                 f"({summary['settled_perc']:.1f}%)"),
            ("settled per day", f"ever:{freq['ever']:.2f} year:{freq['year']:.2f} "
                                f"month:{freq['month']:.2f} week:{freq['week']:.2f}"),
            ("network fee mean / median", f"{summary['network_fee_mean']:.1f} / "
                                          f"{summary['network_fee_median']:.1f} ppm"),
            ("all our base fees zero", "yes" if summary["zero_base_fees"] else "no"),
            ("balance mean / variance", f"{summary['balance_mean']:.3f} / "
                                        f"{summary['balance_variance']:.3f}"),
            ("pull in / push out", f"{summary['pull_in']} / {summary['push_out']}"),
            ("previous run", last_run),
        ]

        weekday = store.forwards_by_weekday()
        weekday_table = table(WEEKDAYS, [weekday])

        histogram = store.node_fee_histogram()
        fee_table = table(["ppm", "our channels"],
                          [(bucket_label(i), n) for i, n in enumerate(histogram) if n])

        inactive_rows = [
            (link(f"channels/{f.scid}.html", f.scid), esc(store.get_node_alias(f.peer_id)),
             esc(store.get_channel_age_days(f.scid)), esc(fmt_perc(f.balance_ratio)))
            for f in store.mature_inactive_channels()
        ]
        inactive_table = table(["scid", "alias", "age (days)", "balance"],
                               inactive_rows, raw_columns=(0, 1, 2, 3))

        return (
            section("Node", table(["", ""], node_rows))
            + section("Channels", self.channel_table(metas))
            + section(f"Mature inactive channels (> {self.config.mature_channel_days} days)",
                      inactive_table)
            + section("Settled forwards by weekday (UTC)", weekday_table)
            + section("Our fee distribution", fee_table)
        )

    def channel_table(self, metas) -> str:
        store = self.store
        now = store.now
        headers = [
            "scid", "alias", "capacity", "balance", "min_htlc", "max_htlc",
            "our base/ppm", "their base/ppm", "node upd", "chan upd",
            "month fwd", "month fee", "fee out", "fee in", "gain/blk",
            "sink", "sink month", "rebal", "uptime",
        ]
        rows = []
        for meta in sorted(metas, key=lambda m: m.short_channel_id):
            fund = meta.fund
            ours = store.get_our_edge(fund.scid)
            theirs = store.get_their_edge(fund)
            node = store.get_node(fund.peer_id)
            availability = self.availability.get(fund.peer_id)
            rows.append((
                link(f"channels/{fund.scid}.html", fund.scid),
                link(f"nodes/{fund.peer_id}.html", meta.alias),
                esc(fund.amount_msat // 1000),
                esc(f"{fund.balance_perc}%"),
                esc(ours.htlc_min_msat if ours else None),
                esc(ours.htlc_max_msat if ours else None),
                esc(f"{ours.base_fee_msat}/{ours.fee_per_millionth}" if ours else None),
                esc(f"{theirs.base_fee_msat}/{theirs.fee_per_millionth}" if theirs else None),
                esc(days_since(now, node.last_timestamp if node else None)),
                esc(days_since(now, theirs.last_update if theirs else None)),
                esc(meta.last_month_fwd),
                esc(meta.last_month_fee_sat),
                esc(meta.ever_fee_sat_out),
                esc(meta.ever_fee_sat_in),
                esc(meta.gain_per_block),
                esc(meta.is_sink_perc()),
                esc(meta.is_sink_last_month_perc()),
                esc(meta.rebalance.value or None),
                esc(fmt_perc(availability) if availability is not None else None),
            ))
        return table(headers, rows, raw_columns=tuple(range(len(headers))))

    # =========================================================================
    # ENTITY PAGES
    # =========================================================================

    def channel_body(self, meta) -> str:
        store = self.store
        fund = meta.fund
        scid = fund.scid
        ts = store.get_setchannel_timestamp(scid)
        last_set = (f"{fmt_time(ts)} ({format_duration(store.now - ts)} ago)"
                    if ts is not None else None)
        rows = [
            ("peer", link(f"../nodes/{fund.peer_id}.html", meta.alias)),
            ("capacity (sat)", esc(fund.amount_msat // 1000)),
            ("our balance (sat)", esc(fund.our_amount_msat // 1000)),
            ("balance", esc(fmt_perc(fund.balance_ratio))),
            ("block born", esc(meta.block_born or None)),
            ("age (days)", esc(store.get_channel_age_days(scid))),
            ("total forwards", esc(store.get_channel_total_forwards(scid))),
            ("total fees (sat)", esc(store.get_channel_total_fees(scid))),
            ("sats per day", esc(f"{store.get_channel_sats_per_day(scid):.2f}")),
            ("failed / local_failed", esc(f"{len(store.get_channel_failed_forwards(scid))} / "
                                          f"{len(store.get_channel_local_failed_forwards(scid))}")),
            ("rebalance", esc(meta.rebalance.value or None)),
            ("last setchannel", esc(last_set)),
        ]
        edges = []
        for edge in (store.get_our_edge(scid), store.get_their_edge(fund)):
            if edge is None:
                continue
            edges.append((edge.source, edge.base_fee_msat, edge.fee_per_millionth,
                          edge.htlc_min_msat, edge.htlc_max_msat, edge.delay,
                          fmt_time(edge.last_update), "yes" if edge.active else "no"))
        forwards = [
            (fmt_time(s.resolved_time), s.in_channel, s.out_channel, s.out_sat, s.fee_sat, s.fee_ppm)
            for s in store.get_channel_forwards(scid)[:MAX_LISTED_FORWARDS]
        ]
        return (
            section("Channel", table(["", ""], rows, raw_columns=(1,)))
            + section("Gossip edges", table(
                ["source", "base", "ppm", "htlc_min", "htlc_max", "delay", "last update", "active"],
                edges))
            + section("Settled forwards", table(
                ["resolved", "in", "out", "amount (sat)", "fee (sat)", "ppm"], forwards))
        )

    def node_body(self, node_id: str) -> str:
        store = self.store
        node = store.get_node(node_id)
        meta = store.chan_meta_per_node().get(node_id)
        mean, median = store.node_channel_fees(node_id)
        availability = self.availability.get(node_id)
        rows = [
            ("id", node_id),
            ("alias", store.get_node_alias(node_id)),
            ("last announcement", fmt_time(node.last_timestamp) if node and node.last_timestamp else None),
            ("channels", meta.count if meta else 0),
            ("avg fee", f"{meta.avg_fee:.1f}" if meta else None),
            ("fee diversity", f"{meta.fee_diversity:.3f}" if meta else None),
            ("fee mean / median", f"{mean:.1f} / {median:.1f}"),
            ("availability", fmt_perc(availability) if availability is not None else None),
            ("note", store.get_peer_note(node_id)),
        ]
        distribution = store.get_peer_fee_distribution(node_id)
        distribution_rows = [
            (bucket_label(i), distribution.outgoing[i], distribution.incoming[i])
            for i in range(len(FEE_BUCKETS))
        ]
        our_channels = [
            (link(f"../channels/{f.scid}.html", f.scid or "N/A"), esc(f.state),
             esc(f.amount_msat // 1000), esc(fmt_perc(f.balance_ratio)))
            for f in store.funds if f.peer_id == node_id
        ]
        return (
            section("Node", table(["", ""], rows))
            + section("Channels with us", table(["scid", "state", "capacity", "balance"],
                                                 our_channels, raw_columns=(0, 1, 2, 3)))
            + section("Fee distribution (capacity in sat)",
                      table(["ppm", "towards node", "from node"], distribution_rows))
        )

    # =========================================================================
    # HISTORY PAGES
    # =========================================================================

    def forwards_week_body(self) -> str:
        store = self.store
        rows = []
        for s in store.filter_settled_forwards_by_days(7):
            rows.append((
                esc(fmt_time(s.resolved_time)),
                link(f"channels/{s.in_channel}.html", s.in_channel),
                link(f"channels/{s.out_channel}.html", s.out_channel),
                esc(s.out_sat), esc(s.fee_sat), esc(s.fee_ppm),
                esc(f"{s.resolved_time - s.received_time:.1f}s"),
            ))
        stats = store.get_forward_statistics()
        stats_rows = [
            (name, st.settled, st.failed, st.local_failed, st.total,
             fmt_perc(st.success_ratio), f"{st.per_day(st.settled):.2f}")
            for name, st in stats.items()
        ]
        return (
            section("Forward statistics", table(
                ["window", "settled", "failed", "local_failed", "total", "success", "settled/day"],
                stats_rows))
            + section("Settled forwards", table(
                ["resolved", "in", "out", "amount (sat)", "fee (sat)", "ppm", "duration"],
                rows, raw_columns=tuple(range(7))))
        )

    def failures_body(self) -> str:
        rows = [
            (fmt_time(f.event_time), f.status, f.in_channel, f.out_channel or "N/A",
             f.in_msat // 1000, f.failcode, f.failreason)
            for f in self.store.failed_forwards()[:MAX_LISTED_FORWARDS]
        ]
        return section("Failed forwards", table(
            ["time", "status", "in", "out", "amount (sat)", "failcode", "failreason"], rows))

    def apy_body(self) -> str:
        apy = self.store.get_apy_data()
        rows = [(f"{m} months", apy.fees_sat[m], f"{apy.apy[m]:.2f}%") for m in APY_MONTHS]
        summary = [
            ("funds in channels (sat)", apy.total_funds_sat),
            ("transacted last month (sat)", apy.transacted_last_month_sat),
        ]
        return (
            section("Funds", table(["", ""], summary))
            + section("Yield", table(["window", "fees (sat)", "APY"], rows))
        )

    def closed_channels_body(self) -> str:
        rows = []
        for info in self.store.get_closed_channels_info():
            closed = info.closed
            peer = (link(f"nodes/{closed.peer_id}.html", info.alias)
                    if closed.peer_id else "N/A")
            rows.append((
                esc(info.scid_display), peer, esc(info.opening_block),
                esc(closed.close_cause), esc(closed.opener), esc(closed.closer),
                esc(closed.total_msat // 1000), esc(closed.final_to_us_msat // 1000),
                esc(closed.total_htlcs_sent),
            ))
        return section("Closed channels", table(
            ["scid", "peer", "opening block", "cause", "opener", "closer",
             "capacity (sat)", "final to us (sat)", "htlcs sent"],
            rows, raw_columns=tuple(range(9))))


def write_routes_page(output_dir: str, entries, summary, now: float) -> str:
    """Write routes-<amount_sat>.html for one centrality analysis."""
    amount_sat = summary.amount_msat // 1000
    rows = [
        (esc(index + 1), link(f"nodes/{e.node_id}.html", e.alias), esc(e.appearances),
         esc(f"{e.avg_fee:.1f}"), esc(f"{e.fee_diversity:.3f}"), esc(e.channel_count))
        for index, e in enumerate(entries)
    ]
    coverage = table(["", ""], [
        ("average hops per route", f"{summary.average_hops:.2f}"),
        ("routes evaluated", summary.evaluated_routes),
        ("nodes scanned", summary.scanned_nodes),
        ("candidate relays", summary.candidate_nodes),
    ])
    if rows:
        relays = table(["rank", "alias", "appearances", "avg fee (ppm)", "fee diversity", "channels"],
                       rows, raw_columns=tuple(range(6)))
    else:
        relays = "<p>No recurring third-party relay nodes detected.</p>"
    body = (
        section("Random route coverage", coverage)
        + section("Top potential relay partners (not direct peers)", relays)
    )
    os.makedirs(output_dir, exist_ok=True)
    path = os.path.join(output_dir, f"routes-{amount_sat}.html")
    with open(path, 'w', encoding='utf-8') as f:
        f.write(render_page(f"Routing Insights - {amount_sat} sats", body, now))
    return path
