"""
Core module initialization.
Exports configuration, logging utilities and domain exceptions.
"""

from dispatch.core.config import (
    AvailabilityRule,
    CourierSelection,
    EnvironmentMode,
    Settings,
    StorageBackend,
    get_settings,
    setup_logging,
)
from dispatch.core.errors import (
    BadRequestError,
    ConflictError,
    DispatchError,
    ForbiddenError,
    NotFoundError,
)

__all__ = [
    "get_settings",
    "setup_logging",
    "Settings",
    "EnvironmentMode",
    "StorageBackend",
    "CourierSelection",
    "AvailabilityRule",
    "DispatchError",
    "NotFoundError",
    "ForbiddenError",
    "BadRequestError",
    "ConflictError",
]
