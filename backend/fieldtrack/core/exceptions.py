"""Error taxonomy for the tracking core.

- Permission errors stop sampling and must end in an emergency checkout.
- Storage errors are fatal for the single operation and always surfaced.
- Delivery errors are recoverable; the record stays pending.
"""


class TrackingError(Exception):
    """Base class for tracking core errors."""


class StorageError(TrackingError):
    """The local store could not complete a read or write."""


class LocationPermissionError(TrackingError):
    """Location (or background location) permission was denied."""


class PermissionLost(LocationPermissionError):
    """Location permission was revoked while a session was running."""


class LocationUnavailableError(TrackingError):
    """The platform has no fresh fix to offer right now."""


class DeliveryError(TrackingError):
    """The remote attendance API rejected or did not answer a request."""


class ConfigurationError(TrackingError):
    """A required setting is missing."""
