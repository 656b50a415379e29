"""Script registry - tracks running continuous scripts by identity."""

import asyncio
import logging
import secrets
import string
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

from kioskremote.channel import ResultChannel

logger = logging.getLogger(__name__)

_ID_ALPHABET = string.digits + string.ascii_lowercase
_ID_SUFFIX_LENGTH = 9


class ScriptMode(str, Enum):
    ONE_SHOT = "one-shot"
    CONTINUOUS = "continuous"


class ScriptState(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass
class ScriptExecution:
    """One registered script and everything needed to tear it down."""

    script_id: str
    channel: ResultChannel
    cleanup: Callable[[], Awaitable[None]]
    mode: ScriptMode = ScriptMode.CONTINUOUS
    page: Any = None
    binding: str | None = None
    state: ScriptState = ScriptState.RUNNING
    started_at: float = field(default_factory=time.time)

    def describe(self) -> dict[str, Any]:
        return {
            "scriptId": self.script_id,
            "mode": self.mode.value,
            "state": self.state.value,
            "startedAt": self.started_at,
            "itemsWritten": self.channel.items_written,
        }


class ScriptRegistry:
    """Identity-keyed table of running scripts.

    stop() removes the entry before it awaits anything, so any number of
    concurrent stop triggers for one identity collapse into a single cleanup.
    """

    def __init__(self) -> None:
        self._scripts: dict[str, ScriptExecution] = {}
        # Identities handed out by generate_id() but not registered yet.
        self._reserved: set[str] = set()

    def generate_id(self) -> str:
        """New identity, distinct from every live or reserved one."""
        while True:
            suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(_ID_SUFFIX_LENGTH))
            script_id = f"script_{int(time.time() * 1000)}_{suffix}"
            if script_id not in self._scripts and script_id not in self._reserved:
                self._reserved.add(script_id)
                return script_id

    def release_id(self, script_id: str):
        """Give back an identity that was never registered."""
        self._reserved.discard(script_id)

    def register(
        self,
        script_id: str,
        channel: ResultChannel,
        cleanup: Callable[[], Awaitable[None]],
        **details: Any,
    ) -> ScriptExecution:
        """Add an entry; `details` fill the remaining ScriptExecution fields."""
        if script_id in self._scripts:
            raise ValueError(f"Script already registered: {script_id}")
        execution = ScriptExecution(script_id=script_id, channel=channel, cleanup=cleanup, **details)
        self._reserved.discard(script_id)
        self._scripts[script_id] = execution
        logger.debug(f"Registered script {script_id}")
        return execution

    def get(self, script_id: str) -> ScriptExecution | None:
        return self._scripts.get(script_id)

    def executions(self) -> list[ScriptExecution]:
        return list(self._scripts.values())

    def list_scripts(self) -> list[dict[str, Any]]:
        return [s.describe() for s in self._scripts.values()]

    def __contains__(self, script_id: object) -> bool:
        return script_id in self._scripts

    def __len__(self) -> int:
        return len(self._scripts)

    async def stop(self, script_id: str) -> bool:
        """Tear down a script. True on the first call, False afterwards."""
        execution = self._scripts.pop(script_id, None)
        if execution is None:
            return False

        logger.info(f"Stopping script {script_id}")
        try:
            await execution.cleanup()
        except Exception as e:
            logger.warning(f"Cleanup of script {script_id} failed: {e}")
        finally:
            execution.state = ScriptState.STOPPED
        return True

    async def stop_where(self, predicate: Callable[[ScriptExecution], bool]) -> int:
        """Stop every script matching predicate concurrently; returns how many were stopped."""
        ids = [sid for sid, s in self._scripts.items() if predicate(s)]
        results = await asyncio.gather(*(self.stop(sid) for sid in ids))
        return sum(1 for stopped in results if stopped)

    async def stop_all(self) -> int:
        """Stop every script concurrently and wait for all cleanups."""
        return await self.stop_where(lambda s: True)
