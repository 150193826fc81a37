"""Process-local registry of cancellation flags for in-flight runs.

Cancellation is cooperative: the orchestrator polls the flag once per step
boundary.  The registry lives in memory only, so a flag set in one process is
invisible to runs executing in another one and is lost on restart.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional


@dataclass
class CancellationToken:
    run_id: str
    _event: threading.Event = field(default_factory=threading.Event, init=False, repr=False)

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class CancellationRegistry:
    def __init__(self) -> None:
        self._tokens: Dict[str, CancellationToken] = {}
        self._lock = threading.Lock()

    def register(self, run_id: str) -> CancellationToken:
        with self._lock:
            token = self._tokens.get(run_id)
            if token is None:
                token = CancellationToken(run_id)
                self._tokens[run_id] = token
            return token

    def get(self, run_id: str) -> Optional[CancellationToken]:
        with self._lock:
            return self._tokens.get(run_id)

    def request_cancel(self, run_id: str) -> bool:
        """Set the flag for *run_id*; returns False when the run is not active."""

        token = self.get(run_id)
        if token is None:
            return False
        token.cancel()
        return True

    def is_cancelled(self, run_id: str) -> bool:
        token = self.get(run_id)
        return bool(token and token.cancelled)

    def discard(self, run_id: str) -> None:
        with self._lock:
            self._tokens.pop(run_id, None)

    def active_ids(self) -> List[str]:
        with self._lock:
            return list(self._tokens)

    def __contains__(self, run_id: object) -> bool:
        with self._lock:
            return run_id in self._tokens
