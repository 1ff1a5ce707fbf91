"""Assessment event schema.

Events are emitted by the reporter during a run so the display layer can show
per-policy progress live. The reporter works the same whether or not anything
is listening to these events.
"""

from enum import Enum

from pydantic import BaseModel


class Stage(str, Enum):
    """The per-policy stages a run can report.

    Extends str so values serialize to plain strings ("scoring") rather than
    "Stage.SCORING", which reads better in logs and NDJSON output.

    Values:
        FETCHING: Observations are being gathered from the requesters.
        SCORING: Consensus observations are being scored.
        BELOW_THRESHOLD: Damage index under the threshold; nothing submitted.
        SUBMITTING: Report attested and handed to the dispatcher.
        CONFIRMED: Settlement transaction confirmed on the ledger.
        REJECTED: The ledger rejected the report (expected no-op).
        ERROR: The policy's assessment failed; other policies continue.
    """

    FETCHING = "fetching"
    SCORING = "scoring"
    BELOW_THRESHOLD = "below_threshold"
    SUBMITTING = "submitting"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    ERROR = "error"


class AssessmentEvent(BaseModel):
    """A single progress event for one policy.

    Attributes:
        policy_id: Policy the event concerns. Used as the panel heading.
        stage: Stage this event represents.
        message: Human-readable detail (e.g. "index 62 ≥ 30").
        timestamp_ms: Milliseconds since the run started.
    """

    policy_id: str
    stage: Stage
    message: str
    timestamp_ms: float
