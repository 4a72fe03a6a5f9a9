"""Initial sync schema: devices, employees, attendance_records

Revision ID: 001_initial_sync
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001_initial_sync'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Skip if tables already exist (e.g. DB created by app create_all())
    bind = op.get_bind()
    inspector = sa.inspect(bind)
    existing = inspector.get_table_names()
    if 'attendance_records' in existing:
        return

    # Terminals
    op.create_table(
        'devices',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('alias', sa.String(), nullable=False),
        sa.Column('ip', sa.String(), nullable=True),
        sa.Column('port', sa.Integer(), nullable=False, server_default='4370'),
        sa.Column('connect_type', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('machine_number', sa.Integer(), nullable=True),
        sa.Column('enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('serial_number', sa.String(), nullable=True),
        sa.Column('firmware_version', sa.String(), nullable=True),
        sa.Column('comm_password', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('user_count', sa.Integer(), nullable=True),
        sa.Column('finger_count', sa.Integer(), nullable=True),
        sa.Column(
            'created_at',
            sa.DateTime(timezone=True),
            server_default=sa.text('CURRENT_TIMESTAMP'),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_devices_id'), 'devices', ['id'], unique=False)
    op.create_index(op.f('ix_devices_enabled'), 'devices', ['enabled'], unique=False)

    # User directory
    op.create_table(
        'employees',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('badge_number', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('department', sa.String(), nullable=True),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            'created_at',
            sa.DateTime(timezone=True),
            server_default=sa.text('CURRENT_TIMESTAMP'),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_employees_id'), 'employees', ['id'], unique=False)
    op.create_index(op.f('ix_employees_badge_number'), 'employees', ['badge_number'], unique=True)

    # One row per physical punch, unique on the full dedup key (no nullable key columns)
    op.create_table(
        'attendance_records',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('check_time', sa.String(length=32), nullable=False),
        sa.Column('check_type', sa.String(length=1), nullable=False),
        sa.Column('verify_code', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('sensor_id', sa.String(), nullable=False),
        sa.Column('memo', sa.String(), nullable=False, server_default=''),
        sa.Column('work_code', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('sn', sa.String(), nullable=False, server_default=''),
        sa.Column('user_ext_fmt', sa.String(), nullable=False, server_default=''),
        sa.Column(
            'created_at',
            sa.DateTime(timezone=True),
            server_default=sa.text('CURRENT_TIMESTAMP'),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(['user_id'], ['employees.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint(
            'user_id', 'check_time', 'check_type', 'verify_code', 'sensor_id',
            'memo', 'work_code', 'sn', 'user_ext_fmt',
            name='uq_attendance_record_dedup_key',
        ),
    )
    op.create_index(op.f('ix_attendance_records_id'), 'attendance_records', ['id'], unique=False)
    op.create_index(op.f('ix_attendance_records_user_id'), 'attendance_records', ['user_id'], unique=False)
    op.create_index(op.f('ix_attendance_records_check_time'), 'attendance_records', ['check_time'], unique=False)
    op.create_index(op.f('ix_attendance_records_sensor_id'), 'attendance_records', ['sensor_id'], unique=False)


def downgrade() -> None:
    op.drop_index(op.f('ix_attendance_records_sensor_id'), table_name='attendance_records')
    op.drop_index(op.f('ix_attendance_records_check_time'), table_name='attendance_records')
    op.drop_index(op.f('ix_attendance_records_user_id'), table_name='attendance_records')
    op.drop_index(op.f('ix_attendance_records_id'), table_name='attendance_records')
    op.drop_table('attendance_records')
    op.drop_index(op.f('ix_employees_badge_number'), table_name='employees')
    op.drop_index(op.f('ix_employees_id'), table_name='employees')
    op.drop_table('employees')
    op.drop_index(op.f('ix_devices_enabled'), table_name='devices')
    op.drop_index(op.f('ix_devices_id'), table_name='devices')
    op.drop_table('devices')
