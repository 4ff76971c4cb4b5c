"""Ledger infrastructure: web3.py gateway to the escrow contract."""

from escrow_settlement.infrastructure.ledger.abi import ESCROW_ABI
from escrow_settlement.infrastructure.ledger.gateway import LedgerGateway, create_gateway

__all__ = ["ESCROW_ABI", "LedgerGateway", "create_gateway"]
