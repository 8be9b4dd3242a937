"""Local durable store for location samples and emergency checkouts.

Every public method is a single transaction against the embedded database.
Nothing here touches the network, so callers on the shutdown path can rely
on it returning (or raising StorageError) without waiting on connectivity.
"""
import logging
from contextlib import contextmanager
from typing import Iterator, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from fieldtrack.core.exceptions import StorageError
from fieldtrack.models.location import CheckoutReason, EmergencyCheckout, LocationUpdate
from fieldtrack.schemas.tracking import EmergencyCheckoutRecord, LocationSample, PendingCount

logger = logging.getLogger(__name__)

MS_PER_DAY = 24 * 60 * 60 * 1000


def _check_fix(latitude: float, longitude: float, accuracy: float, battery_level: int) -> None:
    if not -90 <= latitude <= 90:
        raise ValueError(f"latitude out of range: {latitude}")
    if not -180 <= longitude <= 180:
        raise ValueError(f"longitude out of range: {longitude}")
    if accuracy < 0:
        raise ValueError(f"accuracy must be non-negative: {accuracy}")
    if not 0 <= battery_level <= 100:
        raise ValueError(f"battery level out of range: {battery_level}")


class LocationStore:
    def __init__(self, session_factory):
        self._session_factory = session_factory

    @contextmanager
    def _transaction(self, action: str) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Local store %s failed: %s", action, e, exc_info=True)
            raise StorageError(f"{action} failed: {e}") from e
        finally:
            db.close()

    # ── Inserts ──────────────────────────────────────────────────────

    def insert_sample(
        self,
        employee_id: str,
        latitude: float,
        longitude: float,
        accuracy: float,
        battery_level: int,
        timestamp: int,
        stale: bool = False,
    ) -> int:
        """Append one sample and return its id."""
        _check_fix(latitude, longitude, accuracy, battery_level)
        with self._transaction("insert_sample") as db:
            row = LocationUpdate(
                employee_id=employee_id,
                latitude=latitude,
                longitude=longitude,
                accuracy=accuracy,
                battery_level=battery_level,
                timestamp=timestamp,
                stale=stale,
                synced=False,
                sync_attempts=0,
            )
            db.add(row)
            db.flush()
            return row.id

    def insert_emergency_checkout(
        self,
        employee_id: str,
        latitude: float,
        longitude: float,
        accuracy: float,
        battery_level: int,
        check_out_time: int,
        reason: CheckoutReason,
        check_out_data: Optional[str] = None,
    ) -> int:
        _check_fix(latitude, longitude, accuracy, battery_level)
        reason = CheckoutReason(reason)
        with self._transaction("insert_emergency_checkout") as db:
            row = EmergencyCheckout(
                employee_id=employee_id,
                latitude=latitude,
                longitude=longitude,
                accuracy=accuracy,
                battery_level=battery_level,
                check_out_time=check_out_time,
                reason=reason.value,
                check_out_data=check_out_data,
                synced=False,
                sync_attempts=0,
            )
            db.add(row)
            db.flush()
            return row.id

    # ── Queries ──────────────────────────────────────────────────────

    def list_unsynced(self, employee_id: str) -> List[LocationSample]:
        """Pending samples, oldest capture first."""
        with self._transaction("list_unsynced") as db:
            rows = db.query(LocationUpdate).filter(
                LocationUpdate.employee_id == employee_id,
                LocationUpdate.synced.is_(False),
            ).order_by(LocationUpdate.timestamp.asc(), LocationUpdate.id.asc()).all()
            return [LocationSample.model_validate(r) for r in rows]

    def list_unsynced_emergency_checkouts(self, employee_id: str) -> List[EmergencyCheckoutRecord]:
        """Pending emergency checkouts, oldest first."""
        with self._transaction("list_unsynced_emergency_checkouts") as db:
            rows = db.query(EmergencyCheckout).filter(
                EmergencyCheckout.employee_id == employee_id,
                EmergencyCheckout.synced.is_(False),
            ).order_by(EmergencyCheckout.check_out_time.asc(), EmergencyCheckout.id.asc()).all()
            return [EmergencyCheckoutRecord.model_validate(r) for r in rows]

    def count_pending(self, employee_id: str) -> PendingCount:
        with self._transaction("count_pending") as db:
            locations = db.query(func.count(LocationUpdate.id)).filter(
                LocationUpdate.employee_id == employee_id,
                LocationUpdate.synced.is_(False),
            ).scalar() or 0
            checkouts = db.query(func.count(EmergencyCheckout.id)).filter(
                EmergencyCheckout.employee_id == employee_id,
                EmergencyCheckout.synced.is_(False),
            ).scalar() or 0
        return PendingCount(
            pending_locations=locations,
            pending_check_outs=checkouts,
            total_pending=locations + checkouts,
        )

    def latest_sample(self, employee_id: str) -> Optional[LocationSample]:
        """Most recent sample for the employee, synced or not."""
        with self._transaction("latest_sample") as db:
            row = db.query(LocationUpdate).filter(
                LocationUpdate.employee_id == employee_id,
            ).order_by(LocationUpdate.timestamp.desc(), LocationUpdate.id.desc()).first()
            return LocationSample.model_validate(row) if row else None

    # ── Sync bookkeeping ─────────────────────────────────────────────

    def mark_synced(self, record_id: int) -> bool:
        """Flag a sample delivered. Re-marking a synced row still succeeds."""
        with self._transaction("mark_synced") as db:
            updated = db.query(LocationUpdate).filter(
                LocationUpdate.id == record_id,
            ).update({LocationUpdate.synced: True}, synchronize_session=False)
        return updated > 0

    def mark_emergency_checkout_synced(self, record_id: int) -> bool:
        with self._transaction("mark_emergency_checkout_synced") as db:
            updated = db.query(EmergencyCheckout).filter(
                EmergencyCheckout.id == record_id,
            ).update({EmergencyCheckout.synced: True}, synchronize_session=False)
        return updated > 0

    def record_sample_failure(self, record_id: int, attempted_at: int) -> bool:
        """Count one failed delivery. Synced rows are left alone."""
        with self._transaction("record_sample_failure") as db:
            updated = db.query(LocationUpdate).filter(
                LocationUpdate.id == record_id,
                LocationUpdate.synced.is_(False),
            ).update({
                LocationUpdate.sync_attempts: LocationUpdate.sync_attempts + 1,
                LocationUpdate.last_attempt_at: attempted_at,
            }, synchronize_session=False)
        return updated > 0

    def record_emergency_checkout_failure(self, record_id: int, attempted_at: int) -> bool:
        with self._transaction("record_emergency_checkout_failure") as db:
            updated = db.query(EmergencyCheckout).filter(
                EmergencyCheckout.id == record_id,
                EmergencyCheckout.synced.is_(False),
            ).update({
                EmergencyCheckout.sync_attempts: EmergencyCheckout.sync_attempts + 1,
                EmergencyCheckout.last_attempt_at: attempted_at,
            }, synchronize_session=False)
        return updated > 0

    # ── Deletion ─────────────────────────────────────────────────────

    def clear_employee_data(self, employee_id: str) -> int:
        """Delete every sample and checkout for the employee. Irreversible."""
        with self._transaction("clear_employee_data") as db:
            locations = db.query(LocationUpdate).filter(
                LocationUpdate.employee_id == employee_id,
            ).delete(synchronize_session=False)
            checkouts = db.query(EmergencyCheckout).filter(
                EmergencyCheckout.employee_id == employee_id,
            ).delete(synchronize_session=False)
        logger.info(
            "Cleared local data for %s: %d locations, %d emergency checkouts",
            employee_id, locations, checkouts,
        )
        return locations + checkouts

    def prune_synced(self, older_than_days: int, now_ms: int) -> int:
        """Drop delivered rows captured more than `older_than_days` ago."""
        cutoff = now_ms - older_than_days * MS_PER_DAY
        with self._transaction("prune_synced") as db:
            locations = db.query(LocationUpdate).filter(
                LocationUpdate.synced.is_(True),
                LocationUpdate.timestamp < cutoff,
            ).delete(synchronize_session=False)
            checkouts = db.query(EmergencyCheckout).filter(
                EmergencyCheckout.synced.is_(True),
                EmergencyCheckout.check_out_time < cutoff,
            ).delete(synchronize_session=False)
        if locations or checkouts:
            logger.info("Pruned %d synced locations, %d synced checkouts", locations, checkouts)
        return locations + checkouts
