"""
Biometric terminal (device profile) model
"""
from sqlalchemy import Column, Integer, String, Boolean, DateTime
from sqlalchemy.sql import func
from app.core.config import settings
from app.db.base import Base

DEFAULT_DEVICE_PORT = settings.DEVICE_DEFAULT_PORT


class Device(Base):
    __tablename__ = "devices"

    id = Column(Integer, primary_key=True, index=True)
    alias = Column(String, nullable=False)  # Display name, e.g. "Main Gate"
    ip = Column(String, nullable=True)  # Required when enabled
    port = Column(Integer, default=DEFAULT_DEVICE_PORT, nullable=False)
    connect_type = Column(Integer, default=1, nullable=False)  # 1 = TCP, 0 = UDP
    machine_number = Column(Integer, nullable=True)
    enabled = Column(Boolean, default=True, nullable=False, index=True)
    serial_number = Column(String, nullable=True)
    firmware_version = Column(String, nullable=True)
    comm_password = Column(Integer, default=0, nullable=False)
    user_count = Column(Integer, nullable=True)
    finger_count = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.current_timestamp(), nullable=False)
