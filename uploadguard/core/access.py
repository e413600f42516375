"""File access validation performed before any scanner opens a file.

:class:`AccessValidator` rejects symbolic links, unresolvable paths, paths
carrying NUL bytes and paths outside the configured root directories.  A
symlink is rejected whatever it points to: a regular file validated now could
otherwise be swapped for a link to an arbitrary target before it is read.

An explicitly empty root list disables containment and every path is
allowed.  That fallback exists for non-hosted use and is logged as a warning
each time it is taken.  Configured roots that all fail to resolve admit
nothing.
"""
from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

from uploadguard.config import ScanPolicy
from uploadguard.core.results import AccessDecision

logger = logging.getLogger(__name__)

REASON_NULL_BYTE = "Invalid path: null byte detected"
REASON_SYMLINK = "Symbolic link detected"
REASON_UNRESOLVED = "Unable to resolve file path"
REASON_OUTSIDE_ROOTS = "File path outside allowed directories"


class AccessValidator:
    """Decide whether a file path is safe to open.

    Checks run in a fixed order and the first failure wins:

    1. embedded NUL byte
    2. symbolic link (when ``policy.access.check_symlinks``)
    3. canonical resolution
    4. containment in an allowed root
    """

    def validate(self, path: str | os.PathLike[str], policy: ScanPolicy) -> AccessDecision:
        """Return an :class:`AccessDecision` for *path* under *policy*.

        Never raises for bad input; every failure is a rejected decision.
        """
        raw = os.fspath(path)
        if "\x00" in raw:
            return AccessDecision(False, REASON_NULL_BYTE)

        candidate = Path(raw)
        if policy.access.check_symlinks and candidate.is_symlink():
            return AccessDecision(False, REASON_SYMLINK)

        try:
            resolved = candidate.resolve(strict=True)
        except (OSError, RuntimeError):
            return AccessDecision(False, REASON_UNRESOLVED)

        if not self.configured_roots(policy):
            logger.warning(
                "No allowed roots configured; path allow-list is disabled for %s", resolved
            )
            return AccessDecision(True)

        roots = self.allowed_roots(policy)
        if any(resolved == root or resolved.is_relative_to(root) for root in roots):
            return AccessDecision(True)
        return AccessDecision(False, REASON_OUTSIDE_ROOTS)

    def ensure_allowed(self, path: str | os.PathLike[str], policy: ScanPolicy) -> AccessDecision:
        """Like :meth:`validate`, logging rejected decisions at WARNING."""
        decision = self.validate(path, policy)
        if not decision.allowed:
            logger.warning("File access rejected: path=%r reason=%s", os.fspath(path), decision.reason)
        return decision

    @staticmethod
    def configured_roots(policy: ScanPolicy) -> tuple[Path, ...]:
        """Roots named by *policy*, before resolution.

        Configured roots replace the defaults (the system temp directory and
        ``policy.access.storage_root``).
        """
        configured = policy.access.allowed_roots
        if configured is not None:
            return tuple(Path(root) for root in configured)
        defaults = (Path(tempfile.gettempdir()),)
        if policy.access.storage_root is not None:
            defaults += (policy.access.storage_root,)
        return defaults

    @classmethod
    def allowed_roots(cls, policy: ScanPolicy) -> tuple[Path, ...]:
        """Resolve the roots that apply under *policy*; roots that do not exist are skipped."""
        roots: list[Path] = []
        for root in cls.configured_roots(policy):
            try:
                roots.append(Path(root).resolve(strict=True))
            except (OSError, RuntimeError):
                logger.debug("Skipping unresolvable allowed root %s", root)
        return tuple(roots)
