"""
Datastore access for cl-lightdash

Thin wrapper over lightningd's typed, generation-counted key/value store.
Keys are lists of strings; everything this tool writes lives under the
`lightdash` namespace:

- [lightdash, last_run]                  invocation marker (unix ts string)
- [lightdash, last_setchannel, <scid>]   last fee change per channel
- [lightdash, peer_note, <peer_id>]      free-form operator annotation

The datastore is shared with other tooling, so writes default to
create-or-replace and nothing written during a run is read back.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pyln.client import RpcError

from .models import DatastoreEntry


NAMESPACE = 'lightdash'
LAST_RUN_KEY = [NAMESPACE, 'last_run']
LAST_SETCHANNEL_PREFIX = [NAMESPACE, 'last_setchannel']
PEER_NOTE_PREFIX = [NAMESPACE, 'peer_note']


class DatastoreMode(Enum):
    """Write modes accepted by the `datastore` RPC."""
    MUST_CREATE = "must-create"
    MUST_REPLACE = "must-replace"
    CREATE_OR_REPLACE = "create-or-replace"
    MUST_APPEND = "must-append"
    CREATE_OR_APPEND = "create-or-append"


def setchannel_key(short_channel_id: str) -> List[str]:
    return LAST_SETCHANNEL_PREFIX + [short_channel_id]


def peer_note_key(peer_id: str) -> List[str]:
    return PEER_NOTE_PREFIX + [peer_id]


class Datastore:
    """
    Datastore client bound to a plugin-shaped handle.

    Read helpers swallow malformed entries (logged at error) so a bad
    value behaves as an absent one; write helpers let RpcError propagate
    and callers decide whether the failure matters.
    """

    def __init__(self, plugin):
        self.plugin = plugin

    def list(self, key_prefix: Optional[List[str]] = None) -> List[DatastoreEntry]:
        payload: Dict[str, Any] = {}
        if key_prefix:
            payload["key"] = list(key_prefix)
        result = self.plugin.rpc.call("listdatastore", payload)

        raw_entries = result.get("datastore") if isinstance(result, dict) else None
        if not isinstance(raw_entries, list):
            self.plugin.log(f"Unexpected listdatastore response for {key_prefix}", level='error')
            return []

        entries = []
        for raw in raw_entries:
            try:
                entries.append(DatastoreEntry.from_dict(raw))
            except (KeyError, TypeError, ValueError) as e:
                self.plugin.log(f"Skipping malformed datastore entry {raw!r}: {e}", level='error')
        return entries

    def put_string(self, key: List[str], value: str,
                   mode: DatastoreMode = DatastoreMode.CREATE_OR_REPLACE) -> Dict[str, Any]:
        return self.plugin.rpc.call("datastore", {
            "key": list(key),
            "string": value,
            "mode": mode.value,
        })

    def put_hex(self, key: List[str], hex_value: str,
                mode: DatastoreMode = DatastoreMode.CREATE_OR_REPLACE) -> Dict[str, Any]:
        return self.plugin.rpc.call("datastore", {
            "key": list(key),
            "hex": hex_value,
            "mode": mode.value,
        })

    def delete(self, key: List[str]) -> Dict[str, Any]:
        return self.plugin.rpc.call("deldatastore", {"key": list(key)})

    def load_map(self, prefix: List[str]) -> Dict[str, str]:
        """
        Read every `prefix + [name]` entry into a {name: value} map.

        Transport failures and undecodable payloads are logged and leave
        the affected names out of the map.
        """
        try:
            entries = self.list(prefix)
        except RpcError as e:
            self.plugin.log(f"Failed to list datastore {prefix}: {e}", level='error')
            return {}

        values: Dict[str, str] = {}
        depth = len(prefix) + 1
        for entry in entries:
            if len(entry.key) != depth or entry.key[:len(prefix)] != prefix:
                continue
            try:
                value = entry.value()
            except (ValueError, UnicodeDecodeError) as e:
                self.plugin.log(f"Undecodable datastore value at {entry.key}: {e}", level='error')
                continue
            if value is not None:
                values[entry.key[-1]] = value
        return values
