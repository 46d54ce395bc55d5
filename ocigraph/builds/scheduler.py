"""Graph evaluation.

GraphRunner walks the requested packages in dependency order. Each package
moves ``pending -> fresh`` or ``pending -> building -> built | failed``;
packages whose dependencies did not succeed end ``blocked`` and are never
handed to the backend.

All mutable run state lives in a RunSession, so independent runs can share
a process.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Iterable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ocigraph.errors import BuildError, StalenessReadError
from ocigraph.types import NodeState, Package

if TYPE_CHECKING:
    from ocigraph.builds.builder import ImageBuilder
    from ocigraph.builds.fingerprint import FreshnessOracle
    from ocigraph.builds.history import BuildHistory
    from ocigraph.builds.store import ArtifactStore
    from ocigraph.graph.context import BuildContextResolver
    from ocigraph.graph.target_graph import TargetGraph

logger = logging.getLogger(__name__)


@dataclass
class PackageOutcome:
    """What happened to one package during a run.

    Attributes:
        package: Package name.
        state: Final state.
        reasons: Staleness reasons, or why the package was blocked.
        contexts: Siblings offered as build contexts.
        fingerprint: Input fingerprint, when it could be computed.
        error: The error a failed package ended with.
        phase: Phase of the failure (``staleness`` or ``build``/``manifest``).
        started_at: Evaluation start.
        finished_at: Evaluation end.
    """

    package: str
    state: NodeState = NodeState.PENDING
    reasons: list[str] = field(default_factory=list)
    contexts: list[str] = field(default_factory=list)
    fingerprint: str | None = None
    error: Exception | None = None
    phase: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def error_code(self) -> str | None:
        if self.error is None:
            return None
        return getattr(self.error, "code", type(self.error).__name__)

    @property
    def log_path(self) -> Path | None:
        return getattr(self.error, "log_path", None)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "package": self.package,
            "state": self.state.value,
            "reasons": list(self.reasons),
            "contexts": list(self.contexts),
        }
        if self.fingerprint:
            data["fingerprint"] = self.fingerprint
        if self.error is not None:
            data["error"] = {
                "code": self.error_code,
                "phase": self.phase,
                "message": str(self.error),
            }
            if self.log_path is not None:
                data["error"]["log_path"] = str(self.log_path)
        return data


@dataclass
class RunReport:
    """Outcomes of a run in evaluation order."""

    run_id: str
    outcomes: list[PackageOutcome]

    def _with_state(self, state: NodeState) -> list[str]:
        return [o.package for o in self.outcomes if o.state is state]

    @property
    def built(self) -> list[str]:
        return self._with_state(NodeState.BUILT)

    @property
    def fresh(self) -> list[str]:
        return self._with_state(NodeState.FRESH)

    @property
    def failed(self) -> list[str]:
        return self._with_state(NodeState.FAILED)

    @property
    def blocked(self) -> list[str]:
        return self._with_state(NodeState.BLOCKED)

    @property
    def success(self) -> bool:
        return all(o.state.satisfied for o in self.outcomes)

    def outcome(self, package: str) -> PackageOutcome:
        for o in self.outcomes:
            if o.package == package:
                return o
        raise KeyError(package)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "success": self.success,
            "packages": [o.to_dict() for o in self.outcomes],
        }


class RunSession:
    """Mutable state of one run: node states, outcomes and cancellation."""

    def __init__(self, plan: Iterable[Package], run_id: str | None = None) -> None:
        self.run_id = run_id or uuid.uuid4().hex
        self.plan = list(plan)
        self.outcomes: dict[str, PackageOutcome] = {
            p.name: PackageOutcome(package=p.name) for p in self.plan
        }
        self.cancelled = threading.Event()
        self._lock = threading.Lock()

    def state(self, name: str) -> NodeState:
        with self._lock:
            return self.outcomes[name].state

    def transition(self, name: str, state: NodeState) -> None:
        with self._lock:
            self.outcomes[name].state = state
        logger.debug("%s -> %s", name, state.value)

    def finish(self, outcome: PackageOutcome) -> None:
        with self._lock:
            self.outcomes[outcome.package] = outcome

    def cancel(self) -> None:
        if not self.cancelled.is_set():
            logger.warning("Run %s cancelled: no new builds will start", self.run_id)
        self.cancelled.set()

    def unavailable(self) -> set[str]:
        """Return packages whose on-disk artifact must not be offered as context.

        A package being built may be half overwritten, and one whose build
        failed may have left a partial payload behind.
        """
        with self._lock:
            return {
                name
                for name, o in self.outcomes.items()
                if o.state in (NodeState.BUILDING, NodeState.FAILED)
            }

    def blocker(self, deps: Iterable[str]) -> str | None:
        """Return why dependents of ``deps`` must not run, if any did not succeed."""
        for dep in deps:
            state = self.state(dep)
            if state in (NodeState.FAILED, NodeState.BLOCKED):
                return f"dependency {dep} {state.value}"
        return None

    def report(self) -> RunReport:
        with self._lock:
            return RunReport(
                run_id=self.run_id,
                outcomes=[self.outcomes[p.name] for p in self.plan],
            )


class GraphRunner:
    """Evaluates packages in dependency order, building only stale ones."""

    def __init__(
        self,
        graph: TargetGraph,
        store: ArtifactStore,
        oracle: FreshnessOracle,
        resolver: BuildContextResolver,
        builder: ImageBuilder,
        history: BuildHistory | None = None,
        max_workers: int = 1,
        keep_going: bool = False,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.graph = graph
        self.store = store
        self.oracle = oracle
        self.resolver = resolver
        self.builder = builder
        self.history = history
        self.max_workers = max_workers
        self.keep_going = keep_going

    def plan(self, targets: Iterable[str] | None = None) -> list[Package]:
        """Return the packages a run over ``targets`` would evaluate."""
        names = list(targets) if targets else self.graph.default_targets()
        return self.graph.resolve_many(names)

    def run(self, targets: Iterable[str] | None = None) -> RunReport:
        """Bring the requested packages (default set if none) up to date.

        Raises:
            ConfigurationError: If a target is not declared.
        """
        session = RunSession(self.plan(targets))
        logger.info(
            "Run %s: evaluating %s",
            session.run_id,
            ", ".join(p.name for p in session.plan) or "(nothing)",
        )

        if self.max_workers == 1:
            self._run_sequential(session)
        else:
            self._run_parallel(session)

        report = session.report()
        for outcome in report.outcomes:
            if outcome.state is NodeState.FAILED:
                logger.error(
                    "%s failed during %s: %s", outcome.package, outcome.phase,
                    outcome.error,
                )
        if self.history is not None:
            self.history.record_run(report)
        logger.info(
            "Run %s finished: %d built, %d fresh, %d failed, %d blocked",
            report.run_id,
            len(report.built),
            len(report.fresh),
            len(report.failed),
            len(report.blocked),
        )
        return report

    def _block(self, session: RunSession, package: Package, reason: str) -> None:
        logger.warning("%s blocked: %s", package.name, reason)
        session.finish(
            PackageOutcome(
                package=package.name, state=NodeState.BLOCKED, reasons=[reason]
            )
        )

    def _after(self, session: RunSession, outcome: PackageOutcome) -> None:
        session.finish(outcome)
        if outcome.state is NodeState.FAILED and not self.keep_going:
            session.cancel()

    def _run_sequential(self, session: RunSession) -> None:
        for package in session.plan:
            reason = session.blocker(self.graph.dependencies(package.name))
            if reason is None and session.cancelled.is_set():
                reason = "run cancelled"
            if reason is not None:
                self._block(session, package, reason)
                continue
            self._after(session, self.evaluate(session, package))

    def _run_parallel(self, session: RunSession) -> None:
        pending = list(session.plan)
        running: dict[Future[PackageOutcome], str] = {}

        with ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="ocigraph"
        ) as executor:
            while pending or running:
                for package in list(pending):
                    deps = self.graph.dependencies(package.name)
                    reason = session.blocker(deps)
                    if reason is not None:
                        pending.remove(package)
                        self._block(session, package, reason)
                    elif all(session.state(d).satisfied for d in deps):
                        pending.remove(package)
                        if session.cancelled.is_set():
                            self._block(session, package, "run cancelled")
                        else:
                            future = executor.submit(self.evaluate, session, package)
                            running[future] = package.name

                if not running:
                    # Every remaining package waits on something that never ran
                    for package in pending:
                        self._block(session, package, "dependency not evaluated")
                    break

                done, _ = wait(running, return_when=FIRST_COMPLETED)
                for future in done:
                    running.pop(future)
                    self._after(session, future.result())

    def evaluate(self, session: RunSession, package: Package) -> PackageOutcome:
        """Check one package and build it if stale.

        StalenessReadError and BuildError end the package ``failed``; any
        other exception propagates.
        """
        outcome = PackageOutcome(
            package=package.name, started_at=datetime.now(timezone.utc)
        )
        try:
            staleness = self.oracle.check(package)
        except StalenessReadError as e:
            outcome.state = NodeState.FAILED
            outcome.error = e
            outcome.phase = "staleness"
            outcome.finished_at = datetime.now(timezone.utc)
            return outcome

        outcome.fingerprint = staleness.fingerprint
        outcome.reasons = list(staleness.reasons)
        if not staleness.stale:
            logger.info("%s is fresh", package.name)
            outcome.state = NodeState.FRESH
            outcome.finished_at = datetime.now(timezone.utc)
            return outcome

        logger.info("%s is stale: %s", package.name, "; ".join(staleness.reasons))
        session.transition(package.name, NodeState.BUILDING)
        context = self.resolver.resolve(
            package, self.store, unavailable=session.unavailable()
        )
        outcome.contexts = sorted(context)
        try:
            self.builder.build(package, context, staleness)
        except BuildError as e:
            outcome.state = NodeState.FAILED
            outcome.error = e
            outcome.phase = e.phase
        else:
            outcome.state = NodeState.BUILT
        outcome.finished_at = datetime.now(timezone.utc)
        return outcome


__all__ = ["GraphRunner", "PackageOutcome", "RunReport", "RunSession"]
