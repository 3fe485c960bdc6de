"""Reject redelivered pipeline jobs before they touch any state.

The job queue delivers at least once, so the same pipeline job can arrive
twice. A run may proceed only when the provision is still PENDING and owns
no open (non-released) session. Anything else is a duplicate and the
caller must abort without mutating the provision.
"""

from __future__ import annotations

from provision_engine.errors import DuplicateExecutionError
from provision_engine.models import Provision, ProvisionState
from provision_engine.observability.metrics import ProvisionerMetrics
from provision_engine.protocols import SessionStore


class DuplicateGuard:
    def __init__(
        self,
        sessions: SessionStore,
        *,
        metrics: ProvisionerMetrics | None = None,
    ) -> None:
        self._sessions = sessions
        self._metrics = metrics

    async def check(self, provision: Provision) -> None:
        """Raise DuplicateExecutionError if this run must not proceed."""
        session = await self._sessions.find_open(provision.id)
        if session is not None:
            self._reject()
            raise DuplicateExecutionError(
                provision.id,
                f'session {session.id} is already {session.status.value}',
            )
        if provision.state is not ProvisionState.PENDING:
            self._reject()
            raise DuplicateExecutionError(
                provision.id,
                f'provision is already {provision.state.value}',
            )

    def _reject(self) -> None:
        if self._metrics is not None:
            self._metrics.duplicate_executions.inc()
