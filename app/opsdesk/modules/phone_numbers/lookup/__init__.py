"""
Carrier lookup for mainland mobile numbers.

Providers (lowest priority value first): chahaoba (batch, token), tool.lu
(single, session cookie) and an offline prefix table that always answers.
"""

from app.opsdesk.modules.phone_numbers.lookup.base import BatchResult, LookupResult, PhoneInfo, PhoneLookupError, build_note
from app.opsdesk.modules.phone_numbers.lookup.providers import ChahaobaProvider, OfflineProvider, PhoneProvider, ToolLuProvider
from app.opsdesk.modules.phone_numbers.lookup.service import ALL_FAILED, PhoneLookupService

__all__ = [
    "ALL_FAILED",
    "BatchResult",
    "ChahaobaProvider",
    "LookupResult",
    "OfflineProvider",
    "PhoneInfo",
    "PhoneLookupError",
    "PhoneLookupService",
    "PhoneProvider",
    "ToolLuProvider",
    "build_note",
]
