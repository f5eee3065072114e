"""
Node access layer for cl-lightdash

Every pass talks to Core Lightning through a plugin-shaped handle that
exposes `rpc.call(method, payload)` and `log(message, level)`. Inside
lightningd this is the pyln Plugin itself; on the command line it is a
StandalonePlugin wrapping one of the RPC back ends below:

- pyln.client.LightningRpc: direct unix socket access (--rpc-file)
- CliRpc: runs `lightning-cli` as a subprocess and parses its JSON output
- FixtureRpc: answers read-only calls from local (optionally gzipped)
  JSON dumps, recording write calls instead of performing them

All back ends raise pyln.client.RpcError on failure.
"""

import gzip
import json
import logging
import os
import subprocess
from typing import Any, Dict, List, Optional

from pyln.client import RpcError


# pyln log levels mapped to stdlib logging levels
LOG_LEVELS: Dict[str, int] = {
    'debug': logging.DEBUG,
    'info': logging.INFO,
    'warn': logging.WARNING,
    'warning': logging.WARNING,
    'error': logging.ERROR,
}

# RPC methods that change node state; FixtureRpc never performs them
WRITE_METHODS = frozenset({
    'datastore',
    'deldatastore',
    'setchannel',
    'sling-once',
    'sling-job',
    'sling-deletejob',
    'sling-go',
})


class SnapshotLoadError(Exception):
    """A snapshot document could not be obtained from the node."""

    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"Failed to load {source}: {reason}")


class SnapshotParseError(SnapshotLoadError):
    """A snapshot document did not have the expected shape."""


class StandalonePlugin:
    """
    Plugin-shaped handle for running outside lightningd.

    Offers the two attributes the analysis modules use from a pyln
    Plugin: `rpc` and `log(message, level)`.
    """

    def __init__(self, rpc: Any, logger: Optional[logging.Logger] = None):
        self.rpc = rpc
        self.logger = logger or logging.getLogger('lightdash')

    def log(self, message: str, level: str = 'info') -> None:
        self.logger.log(LOG_LEVELS.get(level, logging.INFO), message)


def _format_cli_value(value: Any) -> str:
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, (list, dict)):
        return json.dumps(value, separators=(',', ':'))
    return str(value)


class CliRpc:
    """
    RPC back end that shells out to the node control CLI.

    Calls are issued in keyword form (`lightning-cli -k method key=value`)
    as an argv vector, without a shell.
    """

    def __init__(self, cli: str = 'lightning-cli', cli_args: Optional[List[str]] = None):
        self.cli = cli
        self.cli_args = list(cli_args or [])

    def argv(self, method: str, payload: Optional[Dict[str, Any]] = None) -> List[str]:
        args = [self.cli] + self.cli_args + ['-k', method]
        for key, value in (payload or {}).items():
            if value is None:
                continue
            args.append(f"{key}={_format_cli_value(value)}")
        return args

    def call(self, method: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        args = self.argv(method, payload)
        try:
            proc = subprocess.run(args, capture_output=True, text=True, check=False)
        except OSError as e:
            raise RpcError(method, payload or {}, {"message": f"cannot run {self.cli}: {e}"})

        try:
            result = json.loads(proc.stdout) if proc.stdout.strip() else {}
        except ValueError:
            raise RpcError(method, payload or {}, {
                "message": f"unparsable output from {self.cli}",
                "output": proc.stdout[:200],
            })

        if proc.returncode != 0:
            error = result if isinstance(result, dict) and result else {
                "message": proc.stderr.strip() or f"exit status {proc.returncode}"
            }
            raise RpcError(method, payload or {}, error)
        return result


class FixtureRpc:
    """
    RPC back end answering from JSON dumps in a directory.

    `listchannels` is served from `<directory>/listchannels` or, when
    absent, from `<directory>/listchannels.gz`. Write methods are recorded
    in `self.calls` and answered with an empty object.
    """

    def __init__(self, directory: str):
        self.directory = os.path.expanduser(directory)
        self.calls: List[Dict[str, Any]] = []

    def _read(self, method: str) -> str:
        plain = os.path.join(self.directory, method)
        if os.path.exists(plain):
            with open(plain, 'r', encoding='utf-8') as f:
                return f.read()
        with gzip.open(plain + '.gz', 'rt', encoding='utf-8') as f:
            return f.read()

    def call(self, method: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if method in WRITE_METHODS:
            self.calls.append({"method": method, "payload": dict(payload or {})})
            return {}
        try:
            text = self._read(method)
        except OSError as e:
            raise RpcError(method, payload or {}, {"message": f"fixture unavailable: {e}"})
        try:
            return json.loads(text)
        except ValueError as e:
            raise RpcError(method, payload or {}, {"message": f"invalid fixture JSON: {e}"})
