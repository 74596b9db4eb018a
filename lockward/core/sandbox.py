"""Sandboxed execution of lifecycle scripts.

Each ``Sandbox.run`` gets a private directory tree, created for the run and
destroyed when it ends::

    <root>/work/...   inputs are materialized here; the script runs inside
    <root>/home       HOME for the script (scratch, discarded)
    <root>/tmp        TMPDIR for the script (scratch, discarded)

Guarantees:

- The environment is built from scratch. Host variables are copied only when
  named in the allow-list.
- Network access is denied unless allowed per command. The process backend
  blackholes proxy settings and forces npm offline; the ``unshare`` and
  ``bwrap`` backends also give the script an empty network namespace.
- Under ``bwrap`` the host filesystem is read-only and only the sandbox tree
  is writable. Callers can require that confinement; a backend without it
  then refuses to launch the script.
- After the script exits the tree is audited. Any file written under
  ``work/`` outside the declared outputs is a denied write; a denied write
  discards every output.
- Timeout or cancellation kills the whole process group and discards
  outputs.
- Outputs are committed all-or-nothing: read and hashed first, then put into
  the store.
"""

from __future__ import annotations

import functools
import io
import logging
import os
import shutil
import signal
import subprocess
import tarfile
import tempfile
import threading
import time
from collections.abc import Mapping, Sequence
from pathlib import Path, PurePosixPath
from typing import Protocol, runtime_checkable

from lockward.core.artifact_store import ContentAddressedStore
from lockward.core.errors import (
    SandboxError,
    SandboxLaunchFailed,
    SandboxNonZeroExit,
    SandboxTimedOut,
    SandboxWriteViolation,
)
from lockward.core.hasher import compute_digest, sha256_hex
from lockward.models.sandbox import SandboxExecutionRecord, SandboxStatus

logger = logging.getLogger(__name__)

DEFAULT_SEARCH_PATH = "/usr/local/bin:/usr/bin:/bin"
_POLL_INTERVAL_S = 0.1
_BLACKHOLE_PROXY = "http://127.0.0.1:9"


# ---------------------------------------------------------------------------
# Isolation backends
# ---------------------------------------------------------------------------

FILESYSTEM_CONFINEMENT = "filesystem_confinement"


@runtime_checkable
class IsolationBackend(Protocol):
    """Wraps a command line with whatever isolation the host can provide.

    ``confines_filesystem`` is True only when writes outside the sandbox
    tree cannot reach the host. Mandatory scripts are refused otherwise.
    """

    name: str
    confines_filesystem: bool

    def wrap(
        self, argv: list[str], *, root: Path, cwd: Path, allow_network: bool
    ) -> tuple[list[str], list[str]]:
        """Return ``(argv, controls)``: the command to spawn and the controls applied."""
        ...


class ProcessIsolation:
    """Plain child process: scrubbed environment, private tree, no proxy route.

    The host filesystem stays reachable, so this backend does not confine.
    """

    name = "process"
    confines_filesystem = False

    def wrap(
        self, argv: list[str], *, root: Path, cwd: Path, allow_network: bool
    ) -> tuple[list[str], list[str]]:
        controls = ["env_allowlist", "private_workdir", "process_group_kill"]
        if not allow_network:
            controls.append("network_env_blackhole")
        return list(argv), controls


class UnshareIsolation(ProcessIsolation):
    """Adds a fresh user and network namespace via util-linux ``unshare``."""

    name = "unshare"

    def __init__(self, unshare_path: str | None = None) -> None:
        self._unshare = unshare_path or shutil.which("unshare")

    @property
    def available(self) -> bool:
        return self._unshare is not None

    def wrap(
        self, argv: list[str], *, root: Path, cwd: Path, allow_network: bool
    ) -> tuple[list[str], list[str]]:
        argv, controls = super().wrap(argv, root=root, cwd=cwd, allow_network=allow_network)
        if allow_network:
            return argv, controls
        if self._unshare is None:
            raise RuntimeError("unshare isolation requested but unshare is not installed")
        controls.append("network_namespace")
        return [self._unshare, "--user", "--map-root-user", "--net", "--", *argv], controls


class BubblewrapIsolation(ProcessIsolation):
    """Mount, PID and network namespaces via bubblewrap (``bwrap``).

    The host root is bound read-only and temporary and home directories are
    replaced by empty tmpfs mounts, so host secrets are not readable there.
    Only the sandbox tree is bound writable. A write to any other path fails
    or lands in a tmpfs that vanishes with the process.
    """

    name = "bwrap"
    confines_filesystem = True

    HIDDEN_DIRS = ("/tmp", "/var/tmp", "/home", "/root", "/run/user")

    def __init__(self, bwrap_path: str | None = None) -> None:
        self._bwrap = bwrap_path or shutil.which("bwrap")
        self._usable: bool | None = None

    @property
    def available(self) -> bool:
        """bwrap is installed and the host lets it create namespaces."""
        if self._usable is None:
            self._usable = self._bwrap is not None and self._smoke_test()
        return self._usable

    def _smoke_test(self) -> bool:
        with tempfile.TemporaryDirectory(prefix="lockward-bwrap-") as tmp:
            argv, _ = self.wrap(
                ["/bin/true"], root=Path(tmp), cwd=Path(tmp), allow_network=False
            )
            try:
                proc = subprocess.run(
                    argv,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                    timeout=10,
                )
            except (OSError, subprocess.TimeoutExpired):
                return False
        return proc.returncode == 0

    def wrap(
        self, argv: list[str], *, root: Path, cwd: Path, allow_network: bool
    ) -> tuple[list[str], list[str]]:
        if self._bwrap is None:
            raise RuntimeError("bwrap isolation requested but bubblewrap is not installed")
        _, controls = super().wrap(argv, root=root, cwd=cwd, allow_network=allow_network)
        prefix = [self._bwrap, "--ro-bind", "/", "/", "--dev", "/dev", "--proc", "/proc"]
        for hidden in self.HIDDEN_DIRS:
            if os.path.isdir(hidden):
                prefix += ["--tmpfs", hidden]
        # Bound after the tmpfs mounts so a root under /tmp stays visible
        prefix += [
            "--bind", str(root), str(root),
            "--chdir", str(cwd),
            "--unshare-pid",
            "--die-with-parent",
        ]
        controls += [FILESYSTEM_CONFINEMENT, "read_only_host", "hidden_home_and_tmp", "pid_namespace"]
        if not allow_network:
            prefix.append("--unshare-net")
            controls.append("network_namespace")
        return [*prefix, "--", *argv], controls


@functools.lru_cache(maxsize=1)
def default_backend() -> IsolationBackend:
    """Bubblewrap when the host supports it, otherwise a plain process."""
    bwrap = BubblewrapIsolation()
    if bwrap.available:
        return bwrap
    logger.warning(
        "bubblewrap unavailable: scripts run without filesystem confinement "
        "and mandatory scripts will be refused"
    )
    return ProcessIsolation()


def isolation_backend(name: str) -> IsolationBackend:
    if name == "auto":
        return default_backend()
    if name == "process":
        return ProcessIsolation()
    if name == "unshare":
        return UnshareIsolation()
    if name == "bwrap":
        return BubblewrapIsolation()
    raise ValueError(
        f"Unknown sandbox backend {name!r} (expected 'auto', 'process', 'unshare' or 'bwrap')"
    )


# ---------------------------------------------------------------------------
# Path helpers
# ---------------------------------------------------------------------------


def _safe_relative(path: str, what: str) -> PurePosixPath:
    rel = PurePosixPath(path)
    if rel.is_absolute() or ".." in rel.parts or not rel.parts:
        raise ValueError(f"{what} must be a relative path inside the sandbox: {path!r}")
    return rel


def _snapshot(root: Path) -> dict[str, str]:
    """Map every regular file under *root* to the hash of its content."""
    state: dict[str, str] = {}
    for dirpath, _dirnames, filenames in os.walk(root):
        for filename in filenames:
            full = Path(dirpath) / filename
            if full.is_symlink() or not full.is_file():
                state[str(full)] = "special"
                continue
            try:
                state[str(full)] = sha256_hex(full.read_bytes())
            except OSError:
                state[str(full)] = "unreadable"
    return state


def _is_within(path: Path, parent: Path) -> bool:
    return path == parent or parent in path.parents


# ---------------------------------------------------------------------------
# Sandbox
# ---------------------------------------------------------------------------


class Sandbox:
    """Runs one command per call in an isolated, disposable context.

    Parameters
    ----------
    store:
        Where committed outputs go. Without a store outputs are hashed and
        recorded but not kept.
    backend:
        Isolation backend (defaults to ``default_backend()``).
    default_timeout_s:
        Used when ``run`` is called without a timeout.
    search_path:
        ``PATH`` given to scripts unless ``PATH`` itself is allow-listed.
    max_output_chars:
        Captured stdout/stderr are truncated to this length in records.
    """

    def __init__(
        self,
        store: ContentAddressedStore | None = None,
        *,
        backend: IsolationBackend | None = None,
        default_timeout_s: float = 300.0,
        search_path: str = DEFAULT_SEARCH_PATH,
        max_output_chars: int = 64 * 1024,
    ) -> None:
        self._store = store
        self._backend = backend or default_backend()
        self._default_timeout_s = default_timeout_s
        self._search_path = search_path
        self._max_output_chars = max_output_chars

    @property
    def backend(self) -> IsolationBackend:
        return self._backend

    @property
    def confines_filesystem(self) -> bool:
        return self._backend.confines_filesystem

    def run(
        self,
        command: str,
        inputs: Mapping[str, bytes] | None = None,
        outputs: Sequence[str] = (),
        timeout_s: float | None = None,
        *,
        env_allowlist: Sequence[str] = (),
        allow_network: bool = False,
        workdir: str = ".",
        artifact_digest: str = "",
        phase: str = "run",
        cancel_event: threading.Event | None = None,
        require_confinement: bool = False,
    ) -> SandboxExecutionRecord:
        """Run *command* under ``/bin/sh -c`` and return its execution record.

        ``inputs`` maps relative paths to bytes; gzip tarballs among them are
        also extracted in place. ``workdir`` and ``outputs`` are relative to
        the work directory; the script runs in ``workdir`` when it exists
        after materialization. With ``require_confinement`` a backend that
        cannot confine filesystem writes refuses to launch.
        """
        timeout = timeout_s if timeout_s is not None else self._default_timeout_s
        output_rels = [_safe_relative(o, "output") for o in outputs]
        base = dict(
            artifact_digest=artifact_digest,
            phase=phase,
            command=command,
        )

        if require_confinement and not self.confines_filesystem:
            logger.warning(
                "Sandbox %s [%s] refused: backend %r does not confine filesystem writes",
                phase, artifact_digest[:19] or "-", self._backend.name,
            )
            return SandboxExecutionRecord(
                **base,
                status=SandboxStatus.LAUNCH_FAILED,
                stderr=(
                    f"refusing to run without filesystem confinement "
                    f"(backend {self._backend.name!r})"
                ),
            )

        root = Path(tempfile.mkdtemp(prefix="lockward-sbx-"))
        try:
            work = root / "work"
            home = root / "home"
            tmp = root / "tmp"
            for d in (work, home, tmp):
                d.mkdir()
            self._materialize(work, inputs or {})

            exec_dir = work
            if workdir not in ("", "."):
                candidate = work / _safe_relative(workdir, "workdir")
                if candidate.is_dir():
                    exec_dir = candidate

            env = self._build_env(home, tmp, env_allowlist, allow_network)
            try:
                argv, controls = self._backend.wrap(
                    ["/bin/sh", "-c", command],
                    root=root,
                    cwd=exec_dir,
                    allow_network=allow_network,
                )
            except RuntimeError as exc:
                return SandboxExecutionRecord(
                    **base, status=SandboxStatus.LAUNCH_FAILED, stderr=str(exc)
                )

            before = _snapshot(root)
            started = time.monotonic()
            try:
                proc = subprocess.Popen(
                    argv,
                    cwd=exec_dir,
                    env=env,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    start_new_session=True,
                )
            except OSError as exc:
                return SandboxExecutionRecord(
                    **base,
                    status=SandboxStatus.LAUNCH_FAILED,
                    stderr=str(exc),
                    controls=controls,
                )

            status, stdout, stderr = self._wait(proc, timeout, cancel_event)
            duration = time.monotonic() - started

            denied = self._audit_writes(root, work, exec_dir, output_rels, before)
            declared: dict[str, str] = {}
            if status is SandboxStatus.COMPLETED and proc.returncode != 0:
                status = SandboxStatus.NON_ZERO_EXIT
            if denied and status in (SandboxStatus.COMPLETED, SandboxStatus.NON_ZERO_EXIT):
                status = SandboxStatus.WRITE_VIOLATION
            if status is SandboxStatus.COMPLETED:
                declared = self._commit_outputs(exec_dir, output_rels)

            record = SandboxExecutionRecord(
                **base,
                status=status,
                exit_code=proc.returncode if status is not SandboxStatus.TIMED_OUT else None,
                stdout=self._truncate(stdout),
                stderr=self._truncate(stderr),
                declared_writes=declared,
                denied_writes=denied,
                duration_s=round(duration, 4),
                controls=controls,
            )
        finally:
            shutil.rmtree(root, ignore_errors=True)

        log = logger.info if status.ok else logger.warning
        log(
            "Sandbox %s [%s] %s in %.2fs (exit=%s, denied_writes=%d)",
            phase,
            artifact_digest[:19] or "-",
            status.value,
            record.duration_s,
            record.exit_code,
            len(denied),
        )
        return record

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _build_env(
        self,
        home: Path,
        tmp: Path,
        env_allowlist: Sequence[str],
        allow_network: bool,
    ) -> dict[str, str]:
        env = {
            "PATH": self._search_path,
            "HOME": str(home),
            "TMPDIR": str(tmp),
            "npm_config_cache": str(home / ".npm"),
        }
        if not allow_network:
            for var in ("http_proxy", "https_proxy", "HTTP_PROXY", "HTTPS_PROXY", "ALL_PROXY"):
                env[var] = _BLACKHOLE_PROXY
            env["no_proxy"] = env["NO_PROXY"] = ""
            env["npm_config_offline"] = "true"
        for name in env_allowlist:
            if name in os.environ:
                env[name] = os.environ[name]
        return env

    @staticmethod
    def _materialize(work: Path, inputs: Mapping[str, bytes]) -> None:
        for rel, data in sorted(inputs.items()):
            target = work / _safe_relative(rel, "input")
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
            if rel.endswith((".tgz", ".tar.gz")):
                try:
                    with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
                        tar.extractall(target.parent, filter="data")
                except (tarfile.TarError, OSError) as exc:
                    logger.debug("Input %s is not an extractable tarball: %s", rel, exc)

    def _wait(
        self,
        proc: subprocess.Popen[bytes],
        timeout_s: float,
        cancel_event: threading.Event | None,
    ) -> tuple[SandboxStatus, bytes, bytes]:
        deadline = time.monotonic() + timeout_s
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return (SandboxStatus.TIMED_OUT, *self._kill(proc))
            if cancel_event is not None and cancel_event.is_set():
                return (SandboxStatus.CANCELLED, *self._kill(proc))
            try:
                stdout, stderr = proc.communicate(timeout=min(_POLL_INTERVAL_S, remaining))
            except subprocess.TimeoutExpired:
                continue
            return SandboxStatus.COMPLETED, stdout, stderr

    @staticmethod
    def _kill(proc: subprocess.Popen[bytes]) -> tuple[bytes, bytes]:
        """Kill the whole process group, then drain the pipes."""
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        stdout, stderr = proc.communicate()
        return stdout, stderr

    @staticmethod
    def _audit_writes(
        root: Path,
        work: Path,
        exec_dir: Path,
        outputs: list[PurePosixPath],
        before: dict[str, str],
    ) -> list[str]:
        """Files created or changed outside the declared outputs.

        ``home`` and ``tmp`` are scratch and never count.
        """
        scratch = (root / "home", root / "tmp")
        allowed = [exec_dir / o for o in outputs]
        denied: list[str] = []
        for path_str, content_hash in _snapshot(root).items():
            if before.get(path_str) == content_hash:
                continue
            path = Path(path_str)
            if any(_is_within(path, s) for s in scratch):
                continue
            if _is_within(path, work) and any(_is_within(path, a) for a in allowed):
                continue
            denied.append(os.path.relpath(path, exec_dir))
        return sorted(denied)

    def _commit_outputs(
        self, exec_dir: Path, outputs: list[PurePosixPath]
    ) -> dict[str, str]:
        collected: dict[str, bytes] = {}
        for rel in outputs:
            target = exec_dir / rel
            if target.is_file() and not target.is_symlink():
                collected[str(rel)] = target.read_bytes()
            elif target.is_dir():
                for path in sorted(target.rglob("*")):
                    if path.is_file() and not path.is_symlink():
                        collected[path.relative_to(exec_dir).as_posix()] = path.read_bytes()

        # Hash everything first so a read failure leaves nothing half-committed.
        digests = {rel: compute_digest(data) for rel, data in collected.items()}
        if self._store is not None:
            for rel, digest in digests.items():
                self._store.put(digest, collected[rel])
        return {rel: digests[rel].address for rel in sorted(digests)}

    def _truncate(self, raw: bytes) -> str:
        text = raw.decode("utf-8", errors="replace")
        if len(text) > self._max_output_chars:
            return text[: self._max_output_chars] + "\n[truncated]"
        return text


_STATUS_ERRORS: dict[SandboxStatus, type[SandboxError]] = {
    SandboxStatus.TIMED_OUT: SandboxTimedOut,
    SandboxStatus.NON_ZERO_EXIT: SandboxNonZeroExit,
    SandboxStatus.LAUNCH_FAILED: SandboxLaunchFailed,
    SandboxStatus.WRITE_VIOLATION: SandboxWriteViolation,
}


def sandbox_error(record: SandboxExecutionRecord) -> SandboxError | None:
    """The error a record represents, or None for a clean or cancelled run."""
    error_cls = _STATUS_ERRORS.get(record.status)
    if error_cls is None:
        return None
    detail = f"exit={record.exit_code}"
    if record.denied_writes:
        detail = f"denied writes: {', '.join(record.denied_writes)}"
    elif record.status is SandboxStatus.LAUNCH_FAILED:
        detail = record.stderr.strip() or "not started"
    return error_cls(f"{record.phase} script {record.status.value} ({detail})")
