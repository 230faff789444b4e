"""
Migration script to create the action monitor tables.

Creates actions, preview_tokens and delivery_logs (with their indexes,
including the partial unique index that allows one PENDING action per
node) if they do not exist yet.

Run this script with:
    python migrations/create_action_monitor_tables.py

Or from the app context:
    from migrations.create_action_monitor_tables import migrate
    migrate()
"""

import sys
import os

# Add parent directory to path to import app modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from action_monitor import create_app
from action_monitor.models import db, Action, PreviewToken, DeliveryLog
from sqlalchemy import inspect

TABLES = [Action, PreviewToken, DeliveryLog]


def table_exists(table_name):
    """Check if a table exists in the database."""
    inspector = inspect(db.engine)
    return table_name in inspector.get_table_names()


def migrate(app=None):
    """Create the action monitor tables that don't exist yet."""
    app = app or create_app()

    with app.app_context():
        for model in TABLES:
            table_name = model.__tablename__
            if table_exists(table_name):
                print(f"✓ Table '{table_name}' already exists. Skipping.")
                continue

            print(f"Creating '{table_name}' table...")
            try:
                model.__table__.create(db.engine, checkfirst=True)
            except Exception as e:
                print(f"✗ ERROR: Failed to create table '{table_name}': {e}")
                db.session.rollback()
                return False

            if not table_exists(table_name):
                print(f"✗ ERROR: Table '{table_name}' creation verification failed")
                return False

            print(f"✓ Successfully created '{table_name}' table")
            inspector = inspect(db.engine)
            for idx in inspector.get_indexes(table_name):
                print(f"  - index {idx['name']}: {idx['column_names']}")

    return True


if __name__ == "__main__":
    success = migrate()
    sys.exit(0 if success else 1)
