"""Conflict resolution for replay steps.

``ConflictResolver.resolve`` turns a ``ConflictReport`` into a go/no-go
decision under one of four policies. Automatic policies take one side of
every conflicted path wholesale; ``MANUAL`` hands the report to an injected
handler that blocks until someone outside the engine has fixed the files.
After any policy runs, the backend is queried again: conflicts that survive
mean ``resolved=False``, which the engine turns into a rollback.
"""

import logging
import threading
from typing import Callable, Optional

from histofy.core.backend import ConflictSide, GitBackend
from histofy.models.conflict import ConflictReport, ResolutionOutcome, ResolutionPolicy

logger = logging.getLogger(__name__)

# Receives the report, blocks, returns True once the files are fixed or False to abort
ManualHandler = Callable[[ConflictReport], bool]


class ManualResolutionGate:
    """Blocking manual handler released from another thread.

    The engine thread calls the gate with a report and waits; an API or UI
    thread inspects ``pending`` and calls ``confirm()`` once the files are
    fixed, or ``abort()``.
    """

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout
        self._signal = threading.Event()
        self._lock = threading.Lock()
        self._confirmed = False
        self.pending: Optional[ConflictReport] = None

    def __call__(self, report: ConflictReport) -> bool:
        with self._lock:
            self.pending = report
            self._confirmed = False
            self._signal.clear()

        released = self._signal.wait(self.timeout)

        with self._lock:
            self.pending = None
            return released and self._confirmed

    @property
    def waiting(self) -> bool:
        return self.pending is not None

    def confirm(self) -> None:
        """Signal that the conflicts have been resolved in the working tree."""
        with self._lock:
            self._confirmed = True
            self._signal.set()

    def abort(self) -> None:
        with self._lock:
            self._confirmed = False
            self._signal.set()


class ConflictResolver:
    """Applies a resolution policy to the conflicts left by a replay step."""

    def __init__(self, backend: GitBackend, manual_handler: Optional[ManualHandler] = None):
        self.backend = backend
        self.manual_handler = manual_handler

    def resolve(self, report: ConflictReport, policy: ResolutionPolicy) -> ResolutionOutcome:
        if not report.has_conflicts:
            return ResolutionOutcome(resolved=True, policy=policy)

        logger.info(
            "Resolving %d conflicted path(s) with policy %s",
            len(report.conflicted_paths),
            policy.value,
        )

        if policy == ResolutionPolicy.ABORT:
            return ResolutionOutcome(
                resolved=False, aborted=True, policy=policy, remaining=report
            )

        if policy == ResolutionPolicy.MANUAL:
            if not self._resolve_manually(report):
                return ResolutionOutcome(
                    resolved=False, aborted=True, policy=policy, remaining=report
                )
        elif policy in (ResolutionPolicy.PREFER_INCOMING, ResolutionPolicy.PREFER_CURRENT):
            side = (
                ConflictSide.INCOMING
                if policy == ResolutionPolicy.PREFER_INCOMING
                else ConflictSide.CURRENT
            )
            for path in report.conflicted_paths:
                self.backend.stage_resolution(path, side)
        else:
            raise ValueError(f"Unknown resolution policy: {policy}")

        return self._verify(report, policy)

    def _resolve_manually(self, report: ConflictReport) -> bool:
        if self.manual_handler is None:
            logger.warning("Manual resolution requested but no handler is configured")
            return False

        if not self.manual_handler(report):
            logger.info("Manual resolution aborted")
            return False

        # Stage whatever the user fixed but did not add
        remaining = self.backend.detect_conflicts()
        for path in remaining.conflicted_paths:
            if self.backend.marker_counts(path).total == 0:
                self.backend.mark_resolved(path)
        return True

    def _verify(self, original: ConflictReport, policy: ResolutionPolicy) -> ResolutionOutcome:
        remaining = self.backend.detect_conflicts()
        leftover_markers = [
            path
            for path in original.conflicted_paths
            if self.backend.marker_counts(path).total > 0
        ]

        if remaining.has_conflicts or leftover_markers:
            logger.warning(
                "Policy %s left conflicts in: %s",
                policy.value,
                ", ".join(remaining.conflicted_paths or leftover_markers),
            )
            if not remaining.has_conflicts:
                remaining = ConflictReport(
                    has_conflicts=True,
                    conflicted_paths=leftover_markers,
                    per_file_marker_counts={
                        path: self.backend.marker_counts(path) for path in leftover_markers
                    },
                )
            return ResolutionOutcome(resolved=False, policy=policy, remaining=remaining)

        return ResolutionOutcome(resolved=True, policy=policy, remaining=remaining)
