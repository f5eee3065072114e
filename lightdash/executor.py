"""
Action Executor for cl-lightdash

Planned actions (setchannel, sling-once, sling-job, ...) are plain
records; the executor either logs them as the equivalent
`lightning-cli` command line or performs them through plugin.rpc.

Execution is gated per action family by the Config switches:
- setchannel        -> config.execute_setchannel
- sling-*           -> config.execute_sling

Failures are logged at error and reported in the ActionResult; they
never raise out of the executor and there is no retry.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pyln.client import RpcError

from .config import Config


SETCHANNEL = 'setchannel'
SLING_ONCE = 'sling-once'
SLING_JOB = 'sling-job'
SLING_DELETEJOB = 'sling-deletejob'
SLING_GO = 'sling-go'

SLING_METHODS = frozenset({SLING_ONCE, SLING_JOB, SLING_DELETEJOB, SLING_GO})


def _render(value: Any) -> str:
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, float):
        return f"{value:.2f}"
    if isinstance(value, (list, dict)):
        return json.dumps(value, separators=(',', ':'))
    return str(value)


@dataclass
class Action:
    """
    One node command.

    Positional actions render as `method v1 v2 ...`, the others in keyword
    form `-k method k1=v1 ...`. Parameter order is preserved.
    """
    method: str
    params: Dict[str, Any] = field(default_factory=dict)
    positional: bool = False

    def cli_args(self) -> List[str]:
        if self.positional:
            return [self.method] + [_render(v) for v in self.params.values()]
        return ['-k', self.method] + [f"{k}={_render(v)}" for k, v in self.params.items()]

    def command_line(self, cli: str = 'lightning-cli') -> str:
        return ' '.join([cli] + self.cli_args())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "method": self.method,
            "params": dict(self.params),
            "command": self.command_line(),
        }


@dataclass
class ActionResult:
    """Outcome of one action; `executed` is False for logged-only actions."""
    action: Action
    executed: bool
    success: bool
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.to_dict(),
            "executed": self.executed,
            "success": self.success,
            "result": self.result,
            "error": self.error,
        }


class ActionExecutor:
    """
    Runs or logs planned actions according to the Config switches.
    """

    def __init__(self, plugin, config: Config):
        self.plugin = plugin
        self.config = config

    def is_enabled(self, action: Action) -> bool:
        if action.method == SETCHANNEL:
            return self.config.execute_setchannel
        if action.method in SLING_METHODS:
            return self.config.execute_sling
        return False

    def execute(self, action: Action, context: str = "") -> ActionResult:
        """
        Execute one action, or log it when its switch is off.

        Args:
            action: The action to run
            context: Free text appended to the log line (e.g. the peer alias)

        Returns:
            ActionResult, success=False only when an executed call failed
        """
        command = action.command_line()
        suffix = f" {context}" if context else ""

        if not self.is_enabled(action):
            self.plugin.log(f"[DRY RUN] `{command}`{suffix}")
            return ActionResult(action=action, executed=False, success=True)

        self.plugin.log(f"executing `{command}`{suffix}")
        try:
            result = self.plugin.rpc.call(action.method, dict(action.params))
        except (RpcError, OSError, ValueError) as e:
            self.plugin.log(f"`{command}` failed: {e}", level='error')
            return ActionResult(action=action, executed=True, success=False, error=str(e))

        self.plugin.log(f"cmd return: {json.dumps(result, sort_keys=True)}", level='debug')
        return ActionResult(action=action, executed=True, success=True, result=result)

    def execute_all(self, actions: List[Action]) -> List[ActionResult]:
        return [self.execute(a) for a in actions]
