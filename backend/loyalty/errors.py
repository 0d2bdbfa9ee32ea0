"""Domain errors raised by loyalty admin operations."""


class LoyaltyError(ValueError):
    """Base for loyalty misuse errors surfaced to admin callers."""


class OfferNotFoundError(LoyaltyError):
    pass


class OfferConflictError(LoyaltyError):
    """An active offer already exists for the same brand and size group."""


class ImmutableOfferFieldError(LoyaltyError):
    pass
