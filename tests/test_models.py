"""
Tests for the snapshot data model.

Tests:
- msat parsing in both integer and legacy string forms
- Fund balance ratio clamping and block_born
- SettledForward projection and fee_ppm
- Datastore entry decoding
"""

import pytest

from lightdash.models import (
    Channel, DatastoreEntry, Forward, Fund, SettledForward,
    block_from_scid, parse_msat,
)


def _fund(our, total, scid="800000x1x0"):
    return Fund(peer_id="02" + "b" * 64, state="CHANNELD_NORMAL", our_amount_msat=our,
                amount_msat=total, funding_txid="f" * 64, funding_output=0,
                short_channel_id=scid)


class TestParseMsat:
    """Test amount parsing."""

    def test_integer(self):
        """Integers pass through unchanged."""
        assert parse_msat(1234) == 1234

    def test_legacy_string(self):
        """'1234msat' strings are accepted."""
        assert parse_msat("1234msat") == 1234

    def test_rejects_bool(self):
        """Booleans are not amounts."""
        with pytest.raises(ValueError):
            parse_msat(True)

    def test_rejects_garbage(self):
        """Non-numeric strings raise ValueError."""
        with pytest.raises(ValueError):
            parse_msat("lots")


class TestFund:
    """Test derived Fund values."""

    def test_balance_ratio_half(self):
        """Half the capacity on our side is 0.5."""
        assert _fund(500, 1000).balance_ratio == 0.5

    def test_balance_ratio_clamped_above(self):
        """our_amount above capacity is clamped to 1."""
        assert _fund(1500, 1000).balance_ratio == 1.0

    def test_balance_ratio_zero_capacity(self):
        """Zero capacity gives 0 instead of dividing by zero."""
        assert _fund(0, 0).balance_ratio == 0.0

    def test_block_born(self):
        """The first scid segment is the funding block."""
        assert _fund(1, 2, scid="123456x789x0").block_born == 123456

    def test_missing_scid(self):
        """Channels still opening have no scid and no block."""
        fund = _fund(1, 2, scid=None)
        assert fund.block_born is None
        assert fund.scid == ""


class TestBlockFromScid:
    """Test scid parsing."""

    def test_invalid(self):
        """Unparsable scids give None."""
        assert block_from_scid("notascid") is None
        assert block_from_scid(None) is None


class TestChannel:
    """Test gossip edge parsing."""

    def test_htlc_max_defaults_to_capacity(self):
        """Edges without htlc_maximum_msat use the channel amount."""
        channel = Channel.from_dict({
            "short_channel_id": "1x1x1", "source": "a", "destination": "b",
            "amount_msat": 5000, "base_fee_millisatoshi": 0, "fee_per_millionth": 10,
        })
        assert channel.htlc_max_msat == 5000
        assert channel.active is True

    def test_missing_fee_raises(self):
        """A required field missing raises KeyError."""
        with pytest.raises(KeyError):
            Channel.from_dict({"short_channel_id": "1x1x1", "source": "a", "destination": "b"})


class TestSettledForward:
    """Test settled forward projection."""

    def _forward(self, **overrides):
        data = {
            "in_channel": "1x1x0", "out_channel": "2x2x0", "in_msat": 1_001_000,
            "out_msat": 1_000_000, "fee_msat": 1_000, "status": "settled",
            "received_time": 1_700_000_000.0, "resolved_time": 1_700_000_001.5,
        }
        data.update(overrides)
        return Forward.from_dict(data)

    def test_projection(self):
        """A complete settled forward projects with its fee in sats and ppm."""
        settled = SettledForward.from_forward(self._forward())
        assert settled is not None
        assert settled.fee_sat == 1
        assert settled.fee_ppm == 1000

    def test_zero_out_msat_fee_ppm(self):
        """Zero out_msat yields fee_ppm 0."""
        settled = SettledForward.from_forward(self._forward(out_msat=0))
        assert settled.fee_ppm == 0

    def test_failed_not_projected(self):
        """Only settled forwards project."""
        assert SettledForward.from_forward(self._forward(status="failed")) is None

    def test_missing_fee_not_projected(self):
        """Settled forwards missing optional fields are dropped."""
        forward = self._forward()
        forward.fee_msat = None
        assert SettledForward.from_forward(forward) is None

    def test_unconvertible_timestamp_dropped(self):
        """Timestamps outside the calendar range drop the forward."""
        assert SettledForward.from_forward(self._forward(resolved_time=1e20)) is None

    def test_event_time_falls_back_to_received(self):
        """Forwards without resolution use the received time."""
        forward = self._forward(status="local_failed")
        forward.resolved_time = None
        assert forward.event_time == forward.received_time


class TestDatastoreEntry:
    """Test datastore value decoding."""

    def test_string_value(self):
        """String payloads are returned as is."""
        entry = DatastoreEntry.from_dict({"key": ["a", "b"], "string": "hello"})
        assert entry.value() == "hello"

    def test_hex_value(self):
        """Hex payloads are decoded as UTF-8."""
        entry = DatastoreEntry.from_dict({"key": ["a"], "hex": "68656c6c6f"})
        assert entry.value() == "hello"

    def test_key_must_be_list(self):
        """A string key is rejected."""
        with pytest.raises(ValueError):
            DatastoreEntry.from_dict({"key": "a"})
