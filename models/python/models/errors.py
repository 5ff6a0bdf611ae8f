from typing import List, Optional

from pydantic import ValidationError as PydanticValidationError


class MarketplaceError(Exception):
    """Base exception for marketplace business rules."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(MarketplaceError):
    """Raised when a referenced entity does not exist."""
    pass


class InvalidStateError(MarketplaceError):
    """Raised when a status, timing, amount or ownership precondition fails."""
    pass


class UnauthorizedError(MarketplaceError):
    """Raised when the actor may not perform the action on this entity."""
    pass


class EntityValidationError(MarketplaceError):
    """Raised when entity data violates field-level constraints."""

    def __init__(self, message: str = "Validation error", errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors or []

    @classmethod
    def from_pydantic(cls, exc: PydanticValidationError) -> "EntityValidationError":
        errors = []
        for err in exc.errors():
            loc = ".".join(str(part) for part in err.get("loc", ()))
            errors.append(f"{loc}: {err.get('msg')}" if loc else err.get("msg", ""))
        return cls("Validation error", errors)
