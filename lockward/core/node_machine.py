"""Per-node state machine for a build run.

Enforces:
- Valid state transitions only (VALID_TRANSITIONS table)
- Dependencies COMPLETE before a node enters FETCHING
- Blocking of every transitive dependent when a node fails
- Every transition recorded in the build ledger, when one is attached
"""

from __future__ import annotations

import threading
from typing import Any

from lockward.core.build_ledger import BuildLedger
from lockward.core.dependency_graph import DependencyGraph
from lockward.models.build import VALID_TRANSITIONS, NodeState
from lockward.models.ledger import LedgerEntry


class InvalidTransitionError(RuntimeError):
    """Raised when a requested state transition is not valid."""


class DependencyNotCompleteError(RuntimeError):
    """Raised when a node is started before its dependencies are complete."""


class NodeStateMachine:
    """Tracks and validates node states for one build run.

    Parameters
    ----------
    run_id:
        The build run the states belong to.
    graph:
        The dependency graph being built.
    ledger:
        Optional ledger that receives one entry per transition.
    """

    def __init__(
        self,
        run_id: str,
        graph: DependencyGraph,
        ledger: BuildLedger | None = None,
    ) -> None:
        self._run_id = run_id
        self._graph = graph
        self._ledger = ledger
        self._lock = threading.RLock()
        self._states: dict[str, NodeState] = {key: NodeState.PENDING for key in graph.order}

    def get(self, key: str) -> NodeState:
        with self._lock:
            return self._states[key]

    def snapshot(self) -> dict[str, NodeState]:
        with self._lock:
            return dict(self._states)

    def dependencies_complete(self, key: str) -> bool:
        with self._lock:
            return all(
                self._states[dep] is NodeState.COMPLETE
                for dep in self._graph.get_dependencies(key)
            )

    def transition(
        self,
        key: str,
        target: NodeState,
        *,
        digest: str = "",
        detail: dict[str, Any] | None = None,
    ) -> NodeState:
        """Move a node to *target*; returns the previous state.

        Failing a node blocks all of its transitive dependents that have not
        finished.
        """
        with self._lock:
            current = self._states[key]
            allowed = VALID_TRANSITIONS.get(current, set())
            if target not in allowed:
                raise InvalidTransitionError(
                    f"Cannot transition {key} from {current.value} to {target.value}. "
                    f"Allowed: {sorted(s.value for s in allowed)}"
                )
            if target is NodeState.FETCHING and not self.dependencies_complete(key):
                waiting = [
                    dep for dep in self._graph.get_dependencies(key)
                    if self._states[dep] is not NodeState.COMPLETE
                ]
                raise DependencyNotCompleteError(
                    f"Cannot start {key}: waiting on {', '.join(waiting)}"
                )

            self._states[key] = target
            self._record(key, current, target, digest, detail)

            if target is NodeState.FAILED:
                for dependent in self._graph.get_dependents(key):
                    state = self._states[dependent]
                    if NodeState.BLOCKED in VALID_TRANSITIONS.get(state, set()):
                        self._states[dependent] = NodeState.BLOCKED
                        self._record(
                            dependent, state, NodeState.BLOCKED, "",
                            {"blocked_by": key},
                        )
            return current

    def cancel_unfinished(self) -> list[str]:
        """Cancel every node that has not reached a terminal or cancelled state."""
        cancelled: list[str] = []
        with self._lock:
            for key in self._graph.order:
                state = self._states[key]
                if state is NodeState.PENDING:
                    self._states[key] = NodeState.CANCELLED
                    self._record(key, state, NodeState.CANCELLED, "", None)
                    cancelled.append(key)
        return cancelled

    def _record(
        self,
        key: str,
        current: NodeState,
        target: NodeState,
        digest: str,
        detail: dict[str, Any] | None,
    ) -> None:
        if self._ledger is None:
            return
        self._ledger.append(
            LedgerEntry(
                run_id=self._run_id,
                node=key,
                state_transition=f"{current.value}->{target.value}",
                digest=digest,
                detail=detail or {},
            )
        )
