"""create_telemetry_and_alerts

Revision ID: a1c4e7f20b93
Revises:
Create Date: 2026-10-18 12:00:00.000000

Telemetry hypertable (TimescaleDB), alert triggers, alerts with at most one
open alert per device+sensor, and the hourly average materialized view.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB


revision: str = 'a1c4e7f20b93'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS timescaledb")

    # -- telemetry --------------------------------------------------------
    op.create_table(
        'telemetry',
        sa.Column('device_id', sa.Text(), nullable=False),
        sa.Column('sensor_id', sa.Text(), nullable=False),
        sa.Column('ts', sa.DateTime(timezone=True), nullable=False),
        sa.Column('seq', sa.BigInteger(), nullable=False),
        sa.Column('type', sa.Text(), nullable=False),
        sa.Column('value_type', sa.String(10), nullable=False),
        sa.Column('value_number', sa.Float(), nullable=True),
        sa.Column('value_boolean', sa.Boolean(), nullable=True),
        sa.Column('value_text', sa.Text(), nullable=True),
        sa.Column('unit', sa.Text(), nullable=True),
        sa.Column('location', sa.Text(), nullable=True),
        sa.Column('ingest_time', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('device_id', 'sensor_id', 'ts', 'seq', name='pk_telemetry'),
        sa.CheckConstraint(
            "value_type IN ('number', 'boolean', 'enum', 'string')",
            name='ck_telemetry_value_type',
        ),
        sa.CheckConstraint(
            "(CASE WHEN value_number IS NOT NULL THEN 1 ELSE 0 END)"
            " + (CASE WHEN value_boolean IS NOT NULL THEN 1 ELSE 0 END)"
            " + (CASE WHEN value_text IS NOT NULL THEN 1 ELSE 0 END) = 1",
            name='ck_telemetry_one_value_column',
        ),
    )
    op.execute("SELECT create_hypertable('telemetry', 'ts', if_not_exists => TRUE)")
    op.create_index('ix_telemetry_device_sensor_ts', 'telemetry', ['device_id', 'sensor_id', sa.text('ts DESC')])
    op.create_index('ix_telemetry_device_ts', 'telemetry', ['device_id', sa.text('ts DESC')])
    op.create_index('ix_telemetry_ingest_time', 'telemetry', [sa.text('ingest_time DESC')])

    # -- alert_triggers ---------------------------------------------------
    op.create_table(
        'alert_triggers',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('device_id', sa.Text(), nullable=False),
        sa.Column('sensor_id', sa.Text(), nullable=False),
        sa.Column('name', sa.Text(), nullable=True),
        sa.Column('value_type', sa.String(10), server_default='number', nullable=False),
        sa.Column('min_value', sa.Float(), nullable=True),
        sa.Column('max_value', sa.Float(), nullable=True),
        sa.Column('enabled', sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint(
            "value_type IN ('number', 'boolean', 'string', 'enum')",
            name='ck_alert_triggers_value_type',
        ),
        sa.CheckConstraint(
            "value_type <> 'number' OR min_value IS NOT NULL OR max_value IS NOT NULL",
            name='ck_alert_triggers_numeric_bounds',
        ),
    )
    op.create_index('uq_alert_triggers_device_sensor', 'alert_triggers', ['device_id', 'sensor_id'], unique=True)
    op.create_index('ix_alert_triggers_enabled_lookup', 'alert_triggers', ['enabled', 'device_id', 'sensor_id'])

    # -- alerts -----------------------------------------------------------
    op.create_table(
        'alerts',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('trigger_id', sa.Integer(),
                  sa.ForeignKey('alert_triggers.id', ondelete='RESTRICT',
                                name='fk_alerts_trigger_id_alert_triggers'),
                  nullable=False),
        sa.Column('device_id', sa.Text(), nullable=False),
        sa.Column('sensor_id', sa.Text(), nullable=False),
        sa.Column('start_ts', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_ts', sa.DateTime(timezone=True), nullable=True),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('context', JSONB, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint('end_ts IS NULL OR end_ts >= start_ts', name='ck_alerts_end_after_start'),
    )
    op.create_index('ix_alerts_start_ts', 'alerts', [sa.text('start_ts DESC')])
    op.create_index('ix_alerts_device_sensor_start', 'alerts', ['device_id', 'sensor_id', sa.text('start_ts DESC')])
    op.create_index(
        'uq_alerts_one_open_per_device_sensor', 'alerts', ['device_id', 'sensor_id'],
        unique=True, postgresql_where=sa.text('end_ts IS NULL'),
    )

    # -- hourly aggregates ------------------------------------------------
    op.execute(
        """
        CREATE MATERIALIZED VIEW IF NOT EXISTS telemetry_hourly_avg AS
        SELECT
            time_bucket(INTERVAL '1 hour', ts) AS bucket,
            device_id,
            sensor_id,
            avg(value_number) AS avg_value,
            min(value_number) AS min_value,
            max(value_number) AS max_value,
            count(*)          AS samples
        FROM telemetry
        WHERE value_type = 'number' AND value_number IS NOT NULL
        GROUP BY bucket, device_id, sensor_id
        """
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS ix_telemetry_hourly_avg_device_sensor_bucket "
        "ON telemetry_hourly_avg (device_id, sensor_id, bucket DESC)"
    )


def downgrade() -> None:
    op.execute("DROP MATERIALIZED VIEW IF EXISTS telemetry_hourly_avg")
    op.drop_index('uq_alerts_one_open_per_device_sensor', table_name='alerts')
    op.drop_index('ix_alerts_device_sensor_start', table_name='alerts')
    op.drop_index('ix_alerts_start_ts', table_name='alerts')
    op.drop_table('alerts')
    op.drop_index('ix_alert_triggers_enabled_lookup', table_name='alert_triggers')
    op.drop_index('uq_alert_triggers_device_sensor', table_name='alert_triggers')
    op.drop_table('alert_triggers')
    op.drop_index('ix_telemetry_ingest_time', table_name='telemetry')
    op.drop_index('ix_telemetry_device_ts', table_name='telemetry')
    op.drop_index('ix_telemetry_device_sensor_ts', table_name='telemetry')
    op.drop_table('telemetry')
