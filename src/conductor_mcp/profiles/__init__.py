"""Invocation profile models and loader exports."""

from .loader import ProfileLoadError, ProfileLoader, load_profiles
from .models import InvocationProfile, permission_flags

__all__ = [
    "InvocationProfile",
    "ProfileLoadError",
    "ProfileLoader",
    "load_profiles",
    "permission_flags",
]
