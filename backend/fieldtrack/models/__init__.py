from fieldtrack.models.location import LocationUpdate, EmergencyCheckout, CheckoutReason

__all__ = [
    "LocationUpdate",
    "EmergencyCheckout",
    "CheckoutReason",
]
