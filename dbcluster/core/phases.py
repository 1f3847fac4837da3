"""
Phase scheduler.

A reconcile pass runs a fixed, ordered list of named phases. Each phase is
idempotent and may stop the pass early:

- PROCEED or SKIP (or a NotFoundError): go on with the next phase
- REQUEUE: stop here and hand the delay back to the worker
- FAIL (or any exception): write ``Ready=False/Failed`` with the phase name
  and message, then raise a ReconcileError aggregating the phase error with
  any error from that status write

When every phase proceeds the pass ends with the cluster's resync interval,
if it has one.
"""
from dataclasses import dataclass
from datetime import timedelta
from typing import Awaitable, Callable, List, Optional, Sequence

import structlog

from dbcluster.config.logging import get_logger
from dbcluster.core import conditions
from dbcluster.core.clock import Clock, utcnow
from dbcluster.core.patching import ClusterPatcher
from dbcluster.core.result import Outcome, OutcomeKind
from dbcluster.exceptions import NotFoundError, ReconcileError
from dbcluster.models.cluster import Cluster

logger = get_logger(__name__)


@dataclass(frozen=True)
class Phase:
    """A named reconcile step."""

    name: str
    run: Callable[[Cluster], Awaitable[Outcome]]


def no_resync(cluster: Cluster) -> Optional[timedelta]:
    return None


class PhaseScheduler:
    """Runs phases in declaration order with early exit."""

    def __init__(
        self,
        phases: Sequence[Phase],
        patcher: ClusterPatcher,
        clock: Clock = utcnow,
        resync_after: Callable[[Cluster], Optional[timedelta]] = no_resync,
    ):
        self.phases: List[Phase] = list(phases)
        self.patcher = patcher
        self.clock = clock
        self.resync_after = resync_after

    @property
    def phase_names(self) -> List[str]:
        return [phase.name for phase in self.phases]

    async def run(self, cluster: Cluster) -> Outcome:
        """
        Run one reconcile pass.

        Returns:
            A REQUEUE outcome when the pass should run again, PROCEED otherwise

        Raises:
            ReconcileError: If a phase failed
        """
        for phase in self.phases:
            structlog.contextvars.bind_contextvars(phase=phase.name)
            try:
                outcome = await phase.run(cluster)
            except NotFoundError as e:
                logger.debug("phase_skipped_not_found", cluster=cluster.key, error=str(e))
                continue
            except Exception as e:
                outcome = Outcome.fail(e)
            finally:
                structlog.contextvars.unbind_contextvars("phase")

            if outcome.kind == OutcomeKind.FAIL:
                if isinstance(outcome.error, NotFoundError):
                    logger.debug("phase_skipped_not_found", cluster=cluster.key, error=str(outcome.error))
                    continue
                await self._fail(cluster, phase, outcome.error)

            if outcome.kind == OutcomeKind.SKIP:
                logger.debug("phase_skipped", cluster=cluster.key, phase=phase.name)
                continue
            if outcome.kind == OutcomeKind.REQUEUE:
                logger.debug("phase_requeued", cluster=cluster.key, phase=phase.name, outcome=str(outcome))
                return outcome

        after = self.resync_after(cluster)
        if after:
            return Outcome.requeue(after)
        return Outcome.proceed()

    async def _fail(self, cluster: Cluster, phase: Phase, error: BaseException) -> None:
        errors: List[BaseException] = [error]
        message = f"Error reconciling {phase.name}: {error}"
        logger.error("phase_failed", cluster=cluster.key, phase=phase.name, error=str(error))

        now = self.clock()
        try:
            await self.patcher.patch_status(
                cluster, lambda status: conditions.set_ready_failed(status, message, now)
            )
        except NotFoundError:
            pass
        except Exception as patch_error:
            logger.error(
                "phase_failure_status_patch_failed",
                cluster=cluster.key,
                phase=phase.name,
                error=str(patch_error),
            )
            errors.append(patch_error)

        raise ReconcileError(phase.name, errors) from error
