"""Domain errors shared by the hub's feature modules.

Each error carries a short machine-readable ``reason``; main.py turns them into
HTTP responses.
"""
from typing import Optional


class HubError(Exception):
    """Base class for every error a user action can end with."""

    reason: str = "error"

    def __init__(self, reason: Optional[str] = None) -> None:
        super().__init__(reason or self.reason)
        if reason:
            self.reason = reason


# Identity

class IdentityError(HubError):
    reason = "identity_error"


class WeakPassword(IdentityError):
    reason = "Password must be at least 6 characters long."


class EmailInUse(IdentityError):
    reason = "An account with this email already exists."


class InvalidCredentials(IdentityError):
    reason = "Invalid email or password."


class NotAuthenticated(IdentityError):
    reason = "Not signed in."


# Permissions

class PermissionDenied(HubError):
    reason = "Missing or insufficient permissions."


# Lookups

class NotFound(HubError):
    reason = "not_found"


# Input

class InvalidInput(HubError):
    reason = "invalid_input"


class MissingImage(InvalidInput):
    reason = "Please upload a product image."


class ItemUnavailable(InvalidInput):
    reason = "This item is no longer available."


# Upstream services

class UploadFailed(HubError):
    reason = "Image upload failed."


class DatabaseUnavailable(HubError):
    reason = "Database is not configured."
