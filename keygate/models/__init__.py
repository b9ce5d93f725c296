"""ORM model exports."""

from keygate.models.api_key import APIKey
from keygate.models.profile import Profile

__all__ = ["APIKey", "Profile"]
