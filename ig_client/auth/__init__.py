"""Authentication modules for IG client."""

from .authenticator import Authenticator

__all__ = ["Authenticator"]
