"""
Database models
"""
from app.models.device import Device
from app.models.employee import Employee
from app.models.attendance import AttendanceRecord

__all__ = [
    "Device",
    "Employee",
    "AttendanceRecord",
]
