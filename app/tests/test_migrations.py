"""
Tests for the Alembic migration chain
"""
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, inspect

ALEMBIC_DIR = Path(__file__).resolve().parents[2] / "alembic"


def alembic_config(url: str) -> Config:
    config = Config()
    config.set_main_option("script_location", str(ALEMBIC_DIR))
    config.set_main_option("sqlalchemy.url", url)
    return config


def test_upgrade_creates_schema_and_downgrade_removes_it(tmp_path):
    """Test upgrade head and downgrade base on an empty database"""
    url = f"sqlite:///{tmp_path / 'attendance.db'}"
    config = alembic_config(url)

    command.upgrade(config, "head")

    engine = create_engine(url)
    inspector = inspect(engine)
    assert {"devices", "employees", "attendance_records"} <= set(inspector.get_table_names())
    constraints = inspector.get_unique_constraints("attendance_records")
    dedup = [c for c in constraints if c["name"] == "uq_attendance_record_dedup_key"]
    assert dedup
    assert set(dedup[0]["column_names"]) == {
        "user_id", "check_time", "check_type", "verify_code", "sensor_id",
        "memo", "work_code", "sn", "user_ext_fmt",
    }

    command.downgrade(config, "base")

    assert "attendance_records" not in inspect(engine).get_table_names()
    engine.dispose()
