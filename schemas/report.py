"""Damage report schema.

A DamageReport is built fresh for every policy that crosses the damage
threshold in a run. It is submitted at most once per run. All numeric fields
are integers because they are ABI-encoded as uint256 and re-derived by the
settlement contract with integer arithmetic.
"""

from pydantic import BaseModel, ConfigDict, Field


class DamageReport(BaseModel):
    """One assessed policy, ready to be attested and submitted.

    Invariants (enforced by DamageScorer, which is the only constructor used
    by the pipeline):
        combined_index = min(floor((Ww * weather + Wv * vegetation) / 100), 100)
        payout_amount  = floor(sum_insured_units * combined_index / 100)

    Attributes:
        policy_id: Policy-service identifier, for logging and notifications.
        on_chain_policy_id: Settlement-contract identifier of the policy.
        weather_damage: Weather damage score, 0–100.
        vegetation_damage: Vegetation damage score, 0–100.
        combined_index: Weighted damage index, 0–100.
        payout_amount: Payout in USDC base units (6 decimals).
        assessed_at: Unix timestamp (seconds) the assessment was stamped at.
            The settlement contract rejects reports older than its freshness
            window.
    """

    model_config = ConfigDict(frozen=True)

    policy_id: str
    on_chain_policy_id: int = Field(ge=0)
    weather_damage: int = Field(ge=0, le=100)
    vegetation_damage: int = Field(ge=0, le=100)
    combined_index: int = Field(ge=0, le=100)
    payout_amount: int = Field(ge=0)
    assessed_at: int = Field(ge=0)

    def age_seconds(self, now: float) -> float:
        """Seconds elapsed between assessed_at and now."""
        return now - self.assessed_at
