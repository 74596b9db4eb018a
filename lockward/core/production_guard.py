"""Production configuration guard — enforces hard constraints in production.

Runs once before a build starts and fails hard (raises
``ProductionConfigError``) if a constraint is violated. Other code should
not scatter ``if is_production`` checks.
"""

from __future__ import annotations

import logging

from lockward.config import LockwardSettings

logger = logging.getLogger(__name__)


class ProductionConfigError(RuntimeError):
    """Raised when production configuration constraints are violated.

    The process should exit; this must not be caught and ignored.
    """


def enforce_production_constraints(settings: LockwardSettings) -> None:
    """Validate all production-critical configuration constraints.

    Constraints enforced
    --------------------
    1. Debug mode must be disabled.
    2. Fail-closed orchestration must be enabled.
    3. An attestation signing key must be configured.

    Parameters
    ----------
    settings:
        The active ``LockwardSettings`` instance.

    Raises
    ------
    ProductionConfigError
        Listing every violated constraint at once.
    """
    if not settings.is_production:
        return

    violations: list[str] = []

    if settings.debug:
        violations.append(
            "debug=True is not allowed in production. Set LOCKWARD_DEBUG=false."
        )

    if not settings.fail_closed:
        violations.append(
            "fail_closed=False is not allowed in production. "
            "Set LOCKWARD_FAIL_CLOSED=true."
        )

    if not settings.attestation_signing_key:
        violations.append(
            "An attestation signing key is required in production. "
            "Set LOCKWARD_ATTESTATION_SIGNING_KEY."
        )

    if violations:
        msg = (
            "Production configuration guard failed.\n"
            + "\n".join(f"  - {v}" for v in violations)
        )
        logger.critical(msg)
        raise ProductionConfigError(msg)

    logger.info("Production configuration guard passed.")
