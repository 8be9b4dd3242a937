"""Emergency termination handler.

Writes the one EmergencyCheckout row for a session that cannot end through a
normal stop: battery critical, app closed, force stop, permission revoked,
or a session left open past its maximum length.

The write is synchronous and local. It is the last thing that runs before
the OS may kill the process, so it never waits on the network; the sync
engine delivers the row later. There is no way to guarantee the write beats
a hard kill. If the local write itself fails the session is lost: that is
logged at ERROR and re-raised, never hidden.
"""
import json
import logging
from typing import Any, Mapping, Optional, Union

from fieldtrack.core.clock import SystemClock
from fieldtrack.core.exceptions import StorageError
from fieldtrack.models.location import CheckoutReason
from fieldtrack.schemas.tracking import LocationReading
from fieldtrack.services.location_store import LocationStore

logger = logging.getLogger(__name__)

CheckOutData = Optional[Union[Mapping[str, Any], str]]


def serialize_check_out_data(data: CheckOutData) -> Optional[str]:
    if data is None:
        return None
    if isinstance(data, str):
        return data
    return json.dumps(dict(data), default=str, sort_keys=True)


class EmergencyCheckoutHandler:
    def __init__(self, store: LocationStore, clock=None):
        self.store = store
        self.clock = clock or SystemClock()

    def record(
        self,
        employee_id: str,
        reason: CheckoutReason,
        last_reading: Optional[LocationReading] = None,
        check_out_data: CheckOutData = None,
        battery_level: Optional[int] = None,
    ) -> int:
        """Persist the emergency checkout and return its id.

        Location comes from `last_reading`, else the newest stored sample,
        else (0, 0) with accuracy 0 (unknown). `battery_level` overrides the
        level carried by that fix.
        """
        reason = CheckoutReason(reason)
        check_out_time = self.clock.now_ms()
        try:
            latitude, longitude, accuracy, battery = self._last_known(employee_id, last_reading)
            if battery_level is not None:
                battery = battery_level
            record_id = self.store.insert_emergency_checkout(
                employee_id=employee_id,
                latitude=latitude,
                longitude=longitude,
                accuracy=accuracy,
                battery_level=battery,
                check_out_time=check_out_time,
                reason=reason,
                check_out_data=serialize_check_out_data(check_out_data),
            )
        except StorageError:
            logger.error(
                "Emergency checkout (%s) for %s could not be stored; session is lost",
                reason.value, employee_id, exc_info=True,
            )
            raise

        logger.warning(f"Emergency checkout {record_id} recorded for {employee_id}: {reason.value}")
        return record_id

    def _last_known(self, employee_id: str, last_reading: Optional[LocationReading]):
        if last_reading is not None:
            return last_reading.latitude, last_reading.longitude, last_reading.accuracy, last_reading.battery_level

        sample = self.store.latest_sample(employee_id)
        if sample is not None:
            return sample.latitude, sample.longitude, sample.accuracy, sample.battery_level

        logger.warning(f"No known location for {employee_id}; emergency checkout stored without a fix")
        return 0.0, 0.0, 0.0, 0
