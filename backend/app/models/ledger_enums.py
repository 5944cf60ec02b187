"""
Ledger enumerations for wallet and inventory movements.
"""

import enum


class WalletTransactionType(str, enum.Enum):
    """Wallet transaction type enumeration."""
    DEBIT = "DEBIT"  # Money leaving the account
    CREDIT = "CREDIT"  # Money entering the account


class InventoryAction(str, enum.Enum):
    """Inventory movement kinds."""
    ADD = "ADD"  # Stock received into the brand's holding
    RESERVE = "RESERVE"  # Earmarked for a shipment
    RELEASE = "RELEASE"  # Earmark or committed stock returned
    TRANSFER_OUT = "TRANSFER_OUT"  # Left with a stock-holding partner
    TRANSFER_IN = "TRANSFER_IN"  # Came back from a partner
    CONSUMED = "CONSUMED"  # Delivered to an end customer


class ReservationStatus(str, enum.Enum):
    RESERVED = "RESERVED"
    COMMITTED = "COMMITTED"
    RELEASED = "RELEASED"
