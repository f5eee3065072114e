"""
Tests for the node access back ends.

Tests:
- FixtureRpc plain and gzipped dumps, recorded writes
- CliRpc argv construction and error mapping
- StandalonePlugin log level mapping
"""

import gzip
import json
import logging
from unittest.mock import MagicMock, patch

import pytest
from pyln.client import RpcError

from lightdash.node import CliRpc, FixtureRpc, StandalonePlugin


class TestFixtureRpc:
    """Test answering from dumps."""

    def test_plain_file(self, tmp_path):
        (tmp_path / "getinfo").write_text(json.dumps({"id": "abc", "blockheight": 1}))
        assert FixtureRpc(str(tmp_path)).call("getinfo") == {"id": "abc", "blockheight": 1}

    def test_gzipped_listchannels(self, tmp_path):
        """listchannels may ship compressed."""
        with gzip.open(tmp_path / "listchannels.gz", "wt", encoding="utf-8") as f:
            json.dump({"channels": []}, f)
        assert FixtureRpc(str(tmp_path)).call("listchannels") == {"channels": []}

    def test_missing_file(self, tmp_path):
        with pytest.raises(RpcError):
            FixtureRpc(str(tmp_path)).call("listnodes")

    def test_invalid_json(self, tmp_path):
        (tmp_path / "listnodes").write_text("{not json")
        with pytest.raises(RpcError):
            FixtureRpc(str(tmp_path)).call("listnodes")

    def test_writes_recorded(self, tmp_path):
        """Write methods are never performed, only recorded."""
        rpc = FixtureRpc(str(tmp_path))
        assert rpc.call("setchannel", {"id": "1x1x0"}) == {}
        assert rpc.calls == [{"method": "setchannel", "payload": {"id": "1x1x0"}}]


class TestCliRpc:
    """Test the subprocess back end."""

    def test_argv(self):
        rpc = CliRpc("lightning-cli", ["--network=regtest"])
        argv = rpc.argv("sling-once", {"scid": "1x1x0", "candidates": ["2x2x0"],
                                       "skip": None, "force": False})
        assert argv == ["lightning-cli", "--network=regtest", "-k", "sling-once",
                        "scid=1x1x0", 'candidates=["2x2x0"]', "force=false"]

    @patch("lightdash.node.subprocess.run")
    def test_success(self, run):
        run.return_value = MagicMock(returncode=0, stdout='{"id": "abc"}', stderr="")
        assert CliRpc().call("getinfo") == {"id": "abc"}
        assert run.call_args[0][0] == ["lightning-cli", "-k", "getinfo"]

    @patch("lightdash.node.subprocess.run")
    def test_nonzero_exit(self, run):
        run.return_value = MagicMock(returncode=1, stdout='{"code": -32601, "message": "Unknown"}',
                                     stderr="")
        with pytest.raises(RpcError) as exc:
            CliRpc().call("nosuch")
        assert exc.value.error["message"] == "Unknown"

    @patch("lightdash.node.subprocess.run")
    def test_unparsable_output(self, run):
        run.return_value = MagicMock(returncode=0, stdout="garbage", stderr="")
        with pytest.raises(RpcError):
            CliRpc().call("getinfo")

    @patch("lightdash.node.subprocess.run", side_effect=FileNotFoundError("lightning-cli"))
    def test_missing_binary(self, run):
        with pytest.raises(RpcError):
            CliRpc().call("getinfo")


class TestStandalonePlugin:
    """Test log forwarding."""

    def test_levels(self, caplog):
        plugin = StandalonePlugin(rpc=None, logger=logging.getLogger("lightdash.test"))
        with caplog.at_level(logging.DEBUG, logger="lightdash.test"):
            plugin.log("hello")
            plugin.log("careful", level='warn')
            plugin.log("broken", level='error')
        levels = [r.levelno for r in caplog.records]
        assert levels == [logging.INFO, logging.WARNING, logging.ERROR]
