"""
Party roles enumeration.

Defines the role types for the spare-parts fulfillment platform.
"""

import enum


class UserRole(str, enum.Enum):
    """
    Party role enumeration.

    Roles:
        SUPER_ADMIN: Platform operator with system-level access
        BRAND: Owns parts and stock, ships to its authorized network
        DISTRIBUTOR: Holds brand stock and supplies service centers
        SERVICE_CENTER: Repairs devices, ships parts to customers and returns to brands
        CUSTOMER: End customer receiving parts or sending warranty returns
    """
    SUPER_ADMIN = "SUPER_ADMIN"
    BRAND = "BRAND"
    DISTRIBUTOR = "DISTRIBUTOR"
    SERVICE_CENTER = "SERVICE_CENTER"
    CUSTOMER = "CUSTOMER"


class AuthorizationStatus(str, enum.Enum):
    """Brand network membership status."""
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
