"""SQLAlchemy persistence for paired dice.

Paired devices survive restarts; the registry seeds its paired set from here.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import BigInteger, DateTime, Integer, String, create_engine, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from pixelcentral.models.device import DeviceRecord


class Base(DeclarativeBase):
    pass


class PairedDeviceDB(Base):
    """Database model for a paired die."""

    __tablename__ = "paired_devices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    device_id: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    ble_address: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    firmware_timestamp: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    paired_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    def to_record(self) -> DeviceRecord:
        return DeviceRecord(
            device_id=self.device_id,
            ble_address=self.ble_address,
            name=self.name,
            firmware_timestamp=self.firmware_timestamp,
        )

    def to_dict(self) -> dict:
        return {
            "device_id": self.device_id,
            "name": self.name,
            "ble_address": self.ble_address,
            "firmware_timestamp": self.firmware_timestamp,
            "paired_at": self.paired_at.isoformat() if self.paired_at else None,
        }

    def __repr__(self) -> str:
        return f"<PairedDeviceDB {self.device_id:08X} ({self.name})>"


class PairedDeviceStore:
    """Small repository over :class:`PairedDeviceDB`."""

    def __init__(self, url: str = "sqlite:///pixelcentral.db", *, engine: Optional[Engine] = None) -> None:
        self.engine = engine or create_engine(url, future=True)
        Base.metadata.create_all(self.engine)
        self._sessions = sessionmaker(self.engine, expire_on_commit=False)

    def list_paired(self) -> List[DeviceRecord]:
        with self._sessions() as session:
            rows = session.scalars(select(PairedDeviceDB).order_by(PairedDeviceDB.paired_at)).all()
            return [row.to_record() for row in rows]

    def save(self, record: DeviceRecord) -> None:
        with self._sessions.begin() as session:
            row = self._find(session, record.device_id)
            if row is None:
                row = PairedDeviceDB(device_id=record.device_id)
                session.add(row)
            row.name = record.name
            row.ble_address = record.ble_address
            row.firmware_timestamp = record.firmware_timestamp

    def remove(self, device_id: int) -> bool:
        with self._sessions.begin() as session:
            row = self._find(session, device_id)
            if row is None:
                return False
            session.delete(row)
            return True

    @staticmethod
    def _find(session: Session, device_id: int) -> Optional[PairedDeviceDB]:
        return session.scalars(
            select(PairedDeviceDB).where(PairedDeviceDB.device_id == device_id)
        ).first()


__all__ = ["Base", "PairedDeviceDB", "PairedDeviceStore"]
