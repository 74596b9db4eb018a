"""Build orchestrator — walks the dependency graph and gates every node.

Per node: PENDING -> FETCHING -> VERIFYING -> VERIFIED -> [SANDBOXED] ->
COMPLETE, or FAILED. A node is only fetched once all its dependencies are
COMPLETE, so a dependent never observes an unverified dependency.

Independent nodes run concurrently on a bounded thread pool. At most one
fetch+verify is in flight per distinct digest; a digest already in the store
is served from it.

Fail-closed (the default): the first failure cancels in-flight work and
nothing new is scheduled. Nodes earlier in topological order that were cut
short are then replayed one by one, so the reported failing node is always
the first failure in topological order, whatever the interleaving was.

Mandatory lifecycle scripts only run on a sandbox backend that confines
filesystem writes; elsewhere they fail with ``SANDBOX_LAUNCH_FAILED``.
"""

from __future__ import annotations

import heapq
import logging
import threading
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone

from lockward.core.artifact_store import ContentAddressedStore
from lockward.core.build_ledger import BuildLedger
from lockward.core.dependency_graph import DependencyGraph
from lockward.core.errors import BuildCancelled, DigestMismatch, NodeError
from lockward.core.fetcher import Fetcher
from lockward.core.hasher import canonical_json_bytes, compute_digest
from lockward.core.integrity import IntegrityVerifier
from lockward.core.node_machine import NodeStateMachine
from lockward.core.sandbox import Sandbox, sandbox_error
from lockward.models.artifacts import Artifact
from lockward.models.build import BuildResult, NodeFailure, NodeState
from lockward.models.digest import Digest
from lockward.models.ledger import LedgerEntry
from lockward.models.manifest import ManifestEntry
from lockward.models.sandbox import SandboxExecutionRecord, SandboxStatus

logger = logging.getLogger(__name__)

BUILD_MANIFEST_FORMAT = "lockward-build/1"
PACKAGE_INPUT_NAME = "package.tgz"
PACKAGE_WORKDIR = "package"  # npm tarballs unpack into package/


class _BuildRun:
    """Mutable traversal state for one ``build`` call; owned by the orchestrator."""

    def __init__(self, run_id: str, graph: DependencyGraph, machine: NodeStateMachine) -> None:
        self.run_id = run_id
        self.graph = graph
        self.machine = machine
        self.cancel = threading.Event()
        self.lock = threading.Lock()
        self.inflight: dict[str, Future[bytes]] = {}
        self.failures: dict[str, NodeFailure] = {}
        self.records: dict[str, list[SandboxExecutionRecord]] = {}
        self.outputs: dict[str, dict[str, str]] = {}
        self.artifacts: dict[str, Artifact] = {}
        self.warnings: dict[str, list[str]] = {}

    def fail(self, key: str, error: NodeError) -> None:
        with self.lock:
            self.failures[key] = NodeFailure(node=key, kind=error.kind, message=str(error))

    def warn(self, key: str, message: str) -> None:
        logger.warning("%s: %s", key, message)
        with self.lock:
            self.warnings.setdefault(key, []).append(f"{key}: {message}")

    def first_failure(self) -> NodeFailure | None:
        with self.lock:
            if not self.failures:
                return None
            key = min(self.failures, key=self.graph.index_of)
            return self.failures[key]


class BuildOrchestrator:
    """Fetches, verifies, optionally sandboxes and assembles a dependency graph.

    Parameters
    ----------
    store:
        Content-addressed store; the only resource shared across workers.
    fetcher:
        Untrusted source of bytes for a URL.
    sandbox:
        Runs lifecycle scripts. Defaults to a process sandbox on ``store``.
    concurrency:
        Worker pool size.
    fail_closed:
        Cancel the whole build on the first failure (default). When False,
        only the failing node's dependents are blocked.
    ledger:
        Optional audit ledger receiving every transition and sandbox record.
    """

    def __init__(
        self,
        store: ContentAddressedStore,
        fetcher: Fetcher,
        sandbox: Sandbox | None = None,
        *,
        concurrency: int = 8,
        fail_closed: bool = True,
        ledger: BuildLedger | None = None,
        verifier: IntegrityVerifier | None = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.store = store
        self.fetcher = fetcher
        self.sandbox = sandbox or Sandbox(store)
        self.concurrency = concurrency
        self.fail_closed = fail_closed
        self.ledger = ledger
        self.verifier = verifier or IntegrityVerifier()

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def build(self, graph: DependencyGraph, run_id: str | None = None) -> BuildResult:
        ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
        run_id = run_id or f"lw-{ts}-{uuid.uuid4().hex[:6]}"
        run = _BuildRun(run_id, graph, NodeStateMachine(run_id, graph, self.ledger))
        logger.info(
            "Build %s: %d node(s), concurrency=%d, fail_closed=%s",
            run_id, len(graph), self.concurrency, self.fail_closed,
        )

        self._schedule(run)
        if run.failures and self.fail_closed:
            self._attribute(run)
        return self._assemble(run)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _schedule(self, run: _BuildRun) -> None:
        graph = run.graph
        waiting = {key: len(graph.get_dependencies(key)) for key in graph.order}
        ready = [(graph.index_of(k), k) for k, n in waiting.items() if n == 0]
        heapq.heapify(ready)

        with ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix="lockward"
        ) as pool:
            running: dict[Future[bool], str] = {}
            while True:
                while ready and len(running) < self.concurrency and not run.cancel.is_set():
                    _, key = heapq.heappop(ready)
                    running[pool.submit(self._process_node, run, key)] = key
                if not running:
                    break
                done, _ = wait(running, return_when=FIRST_COMPLETED)
                for future in done:
                    key = running.pop(future)
                    if future.result():
                        for dependent in graph.get_direct_dependents(key):
                            waiting[dependent] -= 1
                            if waiting[dependent] == 0:
                                heapq.heappush(ready, (graph.index_of(dependent), dependent))
                    elif self.fail_closed and not run.cancel.is_set():
                        logger.warning("Fail-closed: cancelling build %s after %s", run.run_id, key)
                        run.cancel.set()

        if run.cancel.is_set():
            run.machine.cancel_unfinished()

    def _attribute(self, run: _BuildRun) -> None:
        """Replay cut-short nodes that precede the first failure, in order."""
        first = run.first_failure()
        assert first is not None
        run.cancel = threading.Event()
        limit = run.graph.index_of(first.node)
        for key in run.graph.order[:limit]:
            if run.machine.get(key) is NodeState.COMPLETE:
                continue
            logger.info("Re-checking %s to attribute the first failure", key)
            with run.lock:
                # Drop what the cut-short attempt recorded
                run.records.pop(key, None)
                run.warnings.pop(key, None)
                run.outputs.pop(key, None)
                run.artifacts.pop(key, None)
            if not self._process_node(run, key):
                break

    # ------------------------------------------------------------------
    # Per-node pipeline
    # ------------------------------------------------------------------

    def _process_node(self, run: _BuildRun, key: str) -> bool:
        """Fetch, verify, store and optionally sandbox one node.

        Returns True when the node is COMPLETE. Never raises node errors:
        they are recorded as the node's failure.
        """
        entry = run.graph.entry(key)
        digest = entry.expected_digest
        try:
            self._check_cancel(run)
            run.machine.transition(key, NodeState.FETCHING)
            data = self._acquire(run, entry)

            run.machine.transition(key, NodeState.VERIFYING)
            result = self.verifier.verify(digest, data)
            if not result.ok:
                raise DigestMismatch(result.expected, result.actual)
            self._check_cancel(run)
            ref = self.store.put(digest, data)
            run.artifacts[key] = Artifact(
                name=entry.name,
                version=entry.version,
                digest=digest,
                source_url=entry.source_url,
                ref=ref,
            )
            run.machine.transition(key, NodeState.VERIFIED, digest=digest.address)

            if entry.execution_policy.runs_scripts and entry.lifecycle_scripts:
                run.machine.transition(key, NodeState.SANDBOXED)
                self._run_scripts(run, entry, data)
            elif entry.lifecycle_scripts or entry.declares_install_script:
                run.warn(key, "lifecycle scripts declared but execution policy is disabled; not run")

            run.machine.transition(key, NodeState.COMPLETE, digest=digest.address)
            logger.debug("%s complete (%s)", key, digest.short())
            return True
        except BuildCancelled:
            if run.machine.get(key) is not NodeState.CANCELLED:
                run.machine.transition(key, NodeState.CANCELLED)
            logger.info("%s cancelled", key)
            return False
        except NodeError as exc:
            run.fail(key, exc)
            run.machine.transition(key, NodeState.FAILED, detail={"kind": exc.kind.value, "error": str(exc)})
            logger.warning("%s failed: %s", key, exc)
            return False

    def _check_cancel(self, run: _BuildRun) -> None:
        if run.cancel.is_set():
            raise BuildCancelled()

    def _acquire(self, run: _BuildRun, entry: ManifestEntry) -> bytes:
        """Bytes for an entry: from the store, a concurrent fetch, or a new fetch.

        Only bytes that verified for the in-flight owner are shared; anything
        else makes this node fetch from its own source URL.
        """
        digest = entry.expected_digest
        if self.store.has(digest):
            return self.store.get(digest)

        with run.lock:
            future = run.inflight.get(digest.address)
            owner = future is None and not self.store.has(digest)
            if owner:
                future = Future()
                run.inflight[digest.address] = future

        if future is None:
            # Stored between the two checks above
            return self.store.get(digest)

        if not owner:
            try:
                shared = future.result()
            except NodeError:
                shared = None
            if shared is not None and self.verifier.verify(digest, shared).ok:
                return shared
            return self.fetcher.fetch(entry.source_url)

        try:
            data = self.fetcher.fetch(entry.source_url)
            if self.verifier.verify(digest, data).ok:
                self.store.put(digest, data)
            future.set_result(data)
            return data
        except BaseException as exc:
            future.set_exception(exc)
            raise
        finally:
            with run.lock:
                run.inflight.pop(digest.address, None)

    def _run_scripts(self, run: _BuildRun, entry: ManifestEntry, data: bytes) -> None:
        key = entry.key
        mandatory = entry.execution_policy.is_mandatory
        for script in entry.ordered_scripts():
            self._check_cancel(run)
            record = self.sandbox.run(
                script.command,
                inputs={PACKAGE_INPUT_NAME: data},
                outputs=script.outputs,
                timeout_s=script.timeout_s,
                env_allowlist=script.env_allowlist,
                allow_network=script.allow_network,
                workdir=PACKAGE_WORKDIR,
                artifact_digest=entry.expected_digest.address,
                phase=script.phase,
                cancel_event=run.cancel,
                require_confinement=mandatory,
            )
            with run.lock:
                run.records.setdefault(key, []).append(record)
            self._record_sandbox(run, key, record)

            if record.status is SandboxStatus.CANCELLED:
                raise BuildCancelled()
            error = sandbox_error(record)
            if error is None:
                with run.lock:
                    run.outputs.setdefault(key, {}).update(record.declared_writes)
                continue
            if mandatory:
                raise error
            run.warn(key, f"{error} (best-effort phase, remaining phases skipped)")
            break

    def _record_sandbox(self, run: _BuildRun, key: str, record: SandboxExecutionRecord) -> None:
        if self.ledger is None:
            return
        self.ledger.append(
            LedgerEntry(
                run_id=run.run_id,
                node=key,
                state_transition=f"sandbox:{record.phase}",
                digest=record.artifact_digest,
                detail={
                    "status": record.status.value,
                    "exit_code": record.exit_code,
                    "declared_writes": record.declared_writes,
                    "denied_writes": record.denied_writes,
                    "controls": record.controls,
                },
            )
        )

    # ------------------------------------------------------------------
    # Result assembly
    # ------------------------------------------------------------------

    def _assemble(self, run: _BuildRun) -> BuildResult:
        graph = run.graph
        failure = run.first_failure()
        limit = graph.index_of(failure.node) if failure else len(graph)
        states = run.machine.snapshot()

        def in_scope(key: str) -> bool:
            return graph.index_of(key) <= limit

        verified = sorted({
            graph.entry(k).expected_digest.address
            for k in graph.order[:limit]
            if states[k] is NodeState.COMPLETE
        })
        artifacts = [
            run.artifacts[k] for k in graph.order[:limit]
            if states[k] is NodeState.COMPLETE and k in run.artifacts
        ]
        warnings = [w for k in graph.order if in_scope(k) for w in run.warnings.get(k, [])]
        records = [r for k in graph.order if in_scope(k) for r in run.records.get(k, [])]

        if failure is not None:
            logger.error(
                "Build %s failed at %s: %s", run.run_id, failure.node, failure.kind.value
            )
            return BuildResult(
                run_id=run.run_id,
                success=False,
                verified_digests=verified,
                artifacts=artifacts,
                failing_node=failure.node,
                error_kind=failure.kind,
                error_message=failure.message,
                warnings=warnings,
                sandbox_records=records,
            )

        root = self._store_build_manifest(run)
        logger.info("Build %s succeeded: root %s", run.run_id, root.short())
        return BuildResult(
            run_id=run.run_id,
            success=True,
            root_digest=root.address,
            verified_digests=verified,
            artifacts=artifacts,
            warnings=warnings,
            sandbox_records=records,
        )

    def _store_build_manifest(self, run: _BuildRun) -> Digest:
        """Put the canonical build manifest in the store and register it as a root."""
        nodes = []
        live: set[Digest] = set()
        for entry in run.graph:
            outputs = run.outputs.get(entry.key, {})
            nodes.append({
                "key": entry.key,
                "name": entry.name,
                "version": entry.version,
                "digest": entry.expected_digest.address,
                "dependencies": list(run.graph.get_dependencies(entry.key)),
                "outputs": dict(sorted(outputs.items())),
            })
            live.add(entry.expected_digest)
            live.update(Digest.parse(address) for address in outputs.values())

        data = canonical_json_bytes({"format": BUILD_MANIFEST_FORMAT, "nodes": nodes})
        root = compute_digest(data)
        self.store.put(root, data)
        live.add(root)
        self.store.register_root(root.hex, live)
        return root
