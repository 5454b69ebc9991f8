"""
Tables for the optional durable backing store.

Each table is independently optional: a missing lock table falls back to the
in-process lock, a missing state table to in-process cooldowns, a missing
events table disables event recording.
"""
import logging

from sqlalchemy import (
    Boolean, Column, DateTime, Float, Integer, MetaData, String, Table, Text, inspect,
)
from sqlalchemy.exc import SQLAlchemyError

LOCKS_TABLE = 'pool_autoscaler_locks'
STATE_TABLE = 'pool_autoscaler_state'
EVENTS_TABLE = 'pool_autoscaler_events'

metadata = MetaData()

locks = Table(
    LOCKS_TABLE, metadata,
    Column('key', String(255), primary_key=True),
    Column('lock_id', Integer, nullable=False),
    Column('holder_id', String(255), nullable=False),
    Column('acquired_at', DateTime, nullable=False),
)

state = Table(
    STATE_TABLE, metadata,
    Column('key', String(255), primary_key=True),
    Column('last_scale_up_at', DateTime, nullable=True),
    Column('last_scale_down_at', DateTime, nullable=True),
    Column('updated_at', DateTime, nullable=False),
)

events = Table(
    EVENTS_TABLE, metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('pool', String(255), nullable=False, index=True),
    Column('action', String(32), nullable=False, index=True),
    Column('from_count', Integer, nullable=False),
    Column('to_count', Integer, nullable=False),
    Column('reason', Text),
    Column('queue_depth', Integer, nullable=False, default=0),
    Column('latency_seconds', Float, nullable=False, default=0.0),
    Column('snapshot_json', Text),
    Column('dry_run', Boolean, nullable=False, default=False),
    Column('created_at', DateTime, nullable=False, index=True),
)


def create_tables(engine, locks: bool = True, cooldowns: bool = True, events: bool = True) -> None:
    """
    Create any subset of the autoscaler tables. Existing tables are left untouched.

    Args:
        engine: SQLAlchemy engine
        locks: Create the table-based lock table
        cooldowns: Create the cooldown state table
        events: Create the scale event log
    """
    selected = []
    if locks:
        selected.append(metadata.tables[LOCKS_TABLE])
    if cooldowns:
        selected.append(metadata.tables[STATE_TABLE])
    if events:
        selected.append(metadata.tables[EVENTS_TABLE])

    metadata.create_all(engine, tables=selected, checkfirst=True)
    logging.info(f"Ensured autoscaler tables: {', '.join(t.name for t in selected)}")


def table_exists(engine, table_name: str) -> bool:
    """Check whether a table exists. Connection failures count as 'missing'."""
    try:
        return inspect(engine).has_table(table_name)
    except SQLAlchemyError as e:
        logging.warning(f"Could not check for table {table_name}: {e}")
        return False
