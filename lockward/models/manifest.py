"""Lock manifest models — normalized entries and their execution policy."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from lockward.models.digest import Digest


class ExecutionPolicy(str, Enum):
    """What to do with an entry's lifecycle scripts.

    Scripts never run implicitly: an entry must opt in to one of the
    sandboxed variants.
    """

    DISABLED = "disabled"
    SANDBOXED_BEST_EFFORT = "sandboxed_best_effort"
    SANDBOXED_MANDATORY = "sandboxed_mandatory"

    @property
    def runs_scripts(self) -> bool:
        return self is not ExecutionPolicy.DISABLED

    @property
    def is_mandatory(self) -> bool:
        return self is ExecutionPolicy.SANDBOXED_MANDATORY


class LifecycleScript(BaseModel):
    """A command an artifact declares for a lifecycle phase."""

    model_config = ConfigDict(frozen=True)

    phase: str  # e.g. "preinstall", "install", "postinstall"
    command: str
    outputs: tuple[str, ...] = ()  # relative paths kept as build outputs
    env_allowlist: tuple[str, ...] = ()  # host variables the script may read
    allow_network: bool = False
    timeout_s: float | None = None  # None -> sandbox default


# npm runs install-time phases in this order
LIFECYCLE_PHASE_ORDER: tuple[str, ...] = ("preinstall", "install", "postinstall", "prepare")


class ManifestEntry(BaseModel):
    """One pinned dependency as declared by the lock manifest."""

    model_config = ConfigDict(frozen=True)

    name: str
    version: str
    expected_digest: Digest
    source_url: str
    lifecycle_scripts: tuple[LifecycleScript, ...] = ()
    execution_policy: ExecutionPolicy = ExecutionPolicy.DISABLED
    dependencies: tuple[str, ...] = ()  # node keys ("name@version")
    declares_install_script: bool = False  # lock file says scripts exist

    @property
    def key(self) -> str:
        return node_key(self.name, self.version)

    def ordered_scripts(self) -> list[LifecycleScript]:
        """Scripts in npm phase order; unknown phases run last, by name."""
        rank = {phase: i for i, phase in enumerate(LIFECYCLE_PHASE_ORDER)}
        return sorted(
            self.lifecycle_scripts,
            key=lambda s: (rank.get(s.phase, len(rank)), s.phase),
        )


def node_key(name: str, version: str) -> str:
    """Graph key for a package: ``name@version`` (scoped names keep their @)."""
    return f"{name}@{version}"


class IntegrityCoverage(BaseModel):
    """How much of a manifest is protected by integrity digests."""

    model_config = ConfigDict(frozen=True)

    total_entries: int
    with_integrity: int
    missing_integrity: list[str] = Field(default_factory=list)
    weak_or_invalid: list[str] = Field(default_factory=list)
    algorithms: dict[str, int] = Field(default_factory=dict)
    install_scripts: list[str] = Field(default_factory=list)

    @property
    def fully_covered(self) -> bool:
        return self.total_entries > 0 and self.with_integrity == self.total_entries
