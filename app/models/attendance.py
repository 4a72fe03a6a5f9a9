"""
Attendance record model (one row per physical punch)
"""
from sqlalchemy import Column, Integer, DateTime, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.db.base import Base

# Column order of the dedup key; two rows sharing all of these are the same punch
DEDUP_KEY_COLUMNS = (
    "user_id",
    "check_time",
    "check_type",
    "verify_code",
    "sensor_id",
    "memo",
    "work_code",
    "sn",
    "user_ext_fmt",
)


class AttendanceRecord(Base):
    __tablename__ = "attendance_records"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("employees.id"), nullable=False, index=True)
    check_time = Column(String(32), nullable=False, index=True)  # Device wall clock, "YYYY-MM-DD HH:MM:SS.fff", never converted
    check_type = Column(String(1), nullable=False)  # "I" / "O"
    verify_code = Column(Integer, nullable=False, default=1)
    sensor_id = Column(String, nullable=False, index=True)  # Source device identifier
    memo = Column(String, nullable=False, default="", server_default="")
    work_code = Column(Integer, nullable=False, default=0)
    sn = Column(String, nullable=False, default="", server_default="")  # Device serial (or device user serial), "" when unknown
    user_ext_fmt = Column(String, nullable=False, default="")
    created_at = Column(DateTime(timezone=True), server_default=func.current_timestamp(), nullable=False)

    __table_args__ = (
        UniqueConstraint(*DEDUP_KEY_COLUMNS, name="uq_attendance_record_dedup_key"),
    )

    employee = relationship("Employee", backref="attendance_records")
