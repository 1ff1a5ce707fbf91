"""Active policy schema.

Policies are owned by the external policy service. The assessment pipeline
only reads them: it never creates, edits or marks a policy paid. The ledger is
the single source of truth for whether a policy has already paid out.
"""

from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class ActivePolicy(BaseModel):
    """One policy that is currently eligible for damage assessment.

    Field aliases match the camelCase JSON returned by the policy service's
    internal endpoint, so a response body validates directly into this model.

    Attributes:
        policy_id: Identifier in the policy service (opaque string).
        on_chain_policy_id: Identifier the settlement contract knows the
            policy by. Carried as an integer because it is ABI-encoded as
            uint256.
        sum_insured: Sum insured in USDC (human units, e.g. "250.50").
        plot_latitude: Latitude of the insured plot, decimal degrees.
        plot_longitude: Longitude of the insured plot, decimal degrees.
        crop_type: Crop grown on the plot. Informational only.
        farmer_wallet: Farmer's payout wallet, when the service knows it.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    policy_id: str = Field(alias="policyId")
    on_chain_policy_id: int = Field(alias="onChainPolicyId", ge=0)
    sum_insured: Decimal = Field(alias="sumInsured", ge=0)
    plot_latitude: float = Field(alias="plotLatitude", ge=-90, le=90)
    plot_longitude: float = Field(alias="plotLongitude", ge=-180, le=180)
    crop_type: str | None = Field(default=None, alias="cropType")
    farmer_wallet: str | None = Field(default=None, alias="farmerWallet")


class PayoutNotification(BaseModel):
    """Body of the payout notification sent once a settlement confirms.

    Attributes:
        policy_id: Policy-service identifier of the settled policy.
        on_chain_policy_id: Ledger identifier of the settled policy.
        damage_index: Combined damage index that was reported (0–100).
        payout_amount: Payout in USDC base units (6 decimals), as emitted by
            the settlement contract when the event was found, otherwise the
            amount we reported.
        tx_hash: Hash of the confirmed settlement transaction.
        block_number: Block the settlement was mined in.
    """

    model_config = ConfigDict(populate_by_name=True)

    policy_id: str = Field(serialization_alias="policyId")
    on_chain_policy_id: int = Field(serialization_alias="onChainPolicyId")
    damage_index: int = Field(serialization_alias="damagePercent", ge=0, le=100)
    payout_amount: int = Field(serialization_alias="payoutAmount", ge=0)
    tx_hash: str = Field(serialization_alias="txHash")
    block_number: int = Field(serialization_alias="blockNumber")
