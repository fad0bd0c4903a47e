"""
Exceptions raised by the lead lifecycle services.
"""
from typing import Optional


class LeadcycleError(Exception):
    """Base exception for leadcycle"""
    def __init__(self, message: str = "An error occurred"):
        self.message = message
        super().__init__(self.message)


class NotFoundError(LeadcycleError):
    """Resource not found"""
    def __init__(self, resource: str = "Resource", resource_id: Optional[str] = None):
        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} with id '{resource_id}' not found"
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(message)


class ConcurrentUpdateError(LeadcycleError):
    """A compare-and-swap write kept losing to another writer"""
    def __init__(self, resource: str = "Resource", resource_id: Optional[str] = None, attempts: int = 0):
        message = f"{resource} '{resource_id}' was modified concurrently"
        if attempts:
            message = f"{message} ({attempts} attempts)"
        super().__init__(message)
