"""Local durable store tables for background location tracking.

Both tables are append-only logs. Rows are mutated only by the sync engine
(synced flag, attempt counter) and deleted only by an explicit employee data
wipe or by pruning rows that were already delivered.
"""
import enum

from sqlalchemy import BigInteger, Boolean, Column, DateTime, Float, Index, Integer, String, Text
from sqlalchemy.sql import func
from fieldtrack.core.database import Base


class CheckoutReason(str, enum.Enum):
    AUTOMATIC = "AUTOMATIC"
    APP_CLOSED = "APP_CLOSED"
    BATTERY_DRAIN = "BATTERY_DRAIN"
    FORCE_CLOSE = "FORCE_CLOSE"


class LocationUpdate(Base):
    """One location + battery sample captured while checked in."""
    __tablename__ = "location_updates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    employee_id = Column(String, nullable=False, index=True)

    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    accuracy = Column(Float, nullable=False, default=0)  # meters, 0 = unknown
    battery_level = Column(Integer, nullable=False, default=0)

    # Device clock at capture time (ms since epoch), not insertion time
    timestamp = Column(BigInteger, nullable=False)
    # Last known fix re-reported because no fresh one was available
    stale = Column(Boolean, nullable=False, default=False)

    # Sync bookkeeping
    synced = Column(Boolean, nullable=False, default=False)
    sync_attempts = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(BigInteger, nullable=True)  # ms since epoch

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("ix_location_updates_pending", "employee_id", "synced", "timestamp"),
    )

    def __repr__(self):
        return f"<LocationUpdate {self.id} {self.employee_id} @{self.timestamp} synced={self.synced}>"


class EmergencyCheckout(Base):
    """Final checkout captured when a session could not end normally."""
    __tablename__ = "emergency_checkouts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    employee_id = Column(String, nullable=False, index=True)

    # Last known location
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    accuracy = Column(Float, nullable=False, default=0)
    battery_level = Column(Integer, nullable=False, default=0)

    # Moment the termination was detected (ms since epoch)
    check_out_time = Column(BigInteger, nullable=False)
    reason = Column(String, nullable=False)  # CheckoutReason value
    check_out_data = Column(Text, nullable=True)  # JSON snapshot for server reconciliation

    synced = Column(Boolean, nullable=False, default=False)
    sync_attempts = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(BigInteger, nullable=True)  # ms since epoch

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("ix_emergency_checkouts_pending", "employee_id", "synced", "check_out_time"),
    )

    def __repr__(self):
        return f"<EmergencyCheckout {self.id} {self.employee_id} {self.reason} synced={self.synced}>"
