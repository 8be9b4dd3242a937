"""Sync engine: drains the local store to the attendance service.

Records go out oldest first. A failed request leaves its records pending with
sync_attempts bumped, and the pass moves on to the next batch; the next
scheduled pass retries. Records are never deleted on failure.
"""
import logging
from typing import Set

from fieldtrack.core.clock import SystemClock
from fieldtrack.core.exceptions import DeliveryError
from fieldtrack.schemas.tracking import SyncResult
from fieldtrack.services.attendance_client import AttendanceClient
from fieldtrack.services.location_store import LocationStore

logger = logging.getLogger(__name__)


class SyncEngine:
    def __init__(self, store: LocationStore, client: AttendanceClient, batch_size: int = 25, clock=None):
        self.store = store
        self.client = client
        self.clock = clock or SystemClock()
        self.batch_size = max(1, batch_size)
        self._in_flight: Set[str] = set()

    def is_syncing(self, employee_id: str) -> bool:
        return employee_id in self._in_flight

    async def sync_pending_for_employee(self, employee_id: str) -> SyncResult:
        """One drain pass for one employee.

        A pass requested while another is running for the same employee
        returns an empty result rather than sending the same rows twice.
        """
        if employee_id in self._in_flight:
            logger.info("Sync already running for %s, skipping", employee_id)
            return SyncResult()

        self._in_flight.add(employee_id)
        try:
            if not self.client.is_configured:
                pending = self.store.count_pending(employee_id)
                logger.warning(
                    "Attendance API not configured; %d records for %s stay pending",
                    pending.total_pending, employee_id,
                )
                return SyncResult(
                    failed_locations=pending.pending_locations,
                    failed_check_outs=pending.pending_check_outs,
                    total_failed=pending.total_pending,
                )

            result = SyncResult()
            await self._sync_locations(employee_id, result)
            await self._sync_checkouts(employee_id, result)
            result.total_synced = result.synced_locations + result.synced_check_outs
            result.total_failed = result.failed_locations + result.failed_check_outs

            if result.total_synced or result.total_failed:
                logger.info(
                    f"Sync for {employee_id}: locations {result.synced_locations} ok / "
                    f"{result.failed_locations} failed, checkouts {result.synced_check_outs} ok / "
                    f"{result.failed_check_outs} failed"
                )
            return result
        finally:
            self._in_flight.discard(employee_id)

    async def _sync_locations(self, employee_id: str, result: SyncResult) -> None:
        pending = self.store.list_unsynced(employee_id)
        for start in range(0, len(pending), self.batch_size):
            batch = pending[start:start + self.batch_size]
            try:
                accepted = set(await self.client.upload_location_batch(employee_id, batch))
            except DeliveryError as e:
                logger.warning(f"Location batch for {employee_id} failed ({len(batch)} records): {e}")
                accepted = set()

            for sample in batch:
                if sample.id in accepted:
                    self.store.mark_synced(sample.id)
                    result.synced_locations += 1
                else:
                    self.store.record_sample_failure(sample.id, self.clock.now_ms())
                    result.failed_locations += 1

    async def _sync_checkouts(self, employee_id: str, result: SyncResult) -> None:
        for checkout in self.store.list_unsynced_emergency_checkouts(employee_id):
            try:
                await self.client.submit_emergency_checkout(checkout)
            except DeliveryError as e:
                logger.warning(f"Emergency checkout {checkout.id} for {employee_id} failed: {e}")
                self.store.record_emergency_checkout_failure(checkout.id, self.clock.now_ms())
                result.failed_check_outs += 1
                continue
            self.store.mark_emergency_checkout_synced(checkout.id)
            result.synced_check_outs += 1
