"""Contract gateways for capital pools and settlement reports."""

from contracts.pools import PoolGateway
from contracts.settlement import LocalSignerAttestor, ReportAttestor, SettlementGateway

__all__ = ["PoolGateway", "SettlementGateway", "ReportAttestor", "LocalSignerAttestor"]
