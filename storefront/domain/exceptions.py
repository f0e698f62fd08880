# storefront/domain/exceptions.py


class StorefrontError(Exception):
    """Base class for errors raised by the storefront services."""


class CatalogUnavailableError(StorefrontError):
    """The catalog service could not be reached or answered with an error."""


class CheckoutRejectedError(StorefrontError):
    """The checkout cannot be sent in the current state (tenant, cart or input)."""


class CartStorageError(StorefrontError):
    """The device storage backing the cart failed after retries."""


class CartBusyError(StorefrontError):
    """Another request holds the lock of this cart for too long."""
