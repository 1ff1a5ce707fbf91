"""Run result schemas.

PolicyOutcome is what happened to a single policy in a run. RunSummary is the
operator-visible result of a whole run: counts plus the per-policy outcomes.
"""

import uuid
from enum import Enum

from pydantic import BaseModel, Field

from schemas.report import DamageReport


class OutcomeStatus(str, Enum):
    """Terminal state of one policy within a run."""

    BELOW_THRESHOLD = "below_threshold"
    SUBMITTED = "submitted"
    REJECTED = "rejected"
    ERRORED = "errored"


class PolicyOutcome(BaseModel):
    """Result of assessing one policy.

    Attributes:
        policy_id: Policy-service identifier.
        status: Terminal state for this run.
        report: The damage report, once scoring succeeded.
        tx_hash: Settlement transaction hash, when one was broadcast. Kept on
            timeouts too so the transaction can be reconciled by hand.
        detail: Rejection reason or error message.
    """

    policy_id: str
    status: OutcomeStatus
    report: DamageReport | None = None
    tx_hash: str | None = None
    detail: str | None = None

    @property
    def assessed(self) -> bool:
        """True once the policy was scored, whatever happened afterwards."""
        return self.report is not None


class RunSummary(BaseModel):
    """Final output of one SettlementReporter.run().

    Attributes:
        run_id: Auto-generated UUID for this run.
        started_at / finished_at: Unix timestamps (seconds).
        policies: Number of active policies returned by consensus.
        outcomes: One entry per policy, in the order policies were listed.
    """

    run_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    started_at: float
    finished_at: float
    policies: int = 0
    outcomes: list[PolicyOutcome] = Field(default_factory=list)

    def _count(self, status: OutcomeStatus) -> int:
        return sum(1 for o in self.outcomes if o.status == status)

    @property
    def assessed(self) -> int:
        return sum(1 for o in self.outcomes if o.assessed)

    @property
    def submitted(self) -> int:
        return self._count(OutcomeStatus.SUBMITTED)

    @property
    def rejected(self) -> int:
        return self._count(OutcomeStatus.REJECTED)

    @property
    def errored(self) -> int:
        return self._count(OutcomeStatus.ERRORED)

    @property
    def below_threshold(self) -> int:
        return self._count(OutcomeStatus.BELOW_THRESHOLD)

    def counts(self) -> dict[str, int]:
        """Counts in a plain dict, for logs and API responses."""
        return {
            "policies": self.policies,
            "assessed": self.assessed,
            "submitted": self.submitted,
            "rejected": self.rejected,
            "errored": self.errored,
            "below_threshold": self.below_threshold,
        }
