"""
Flask-Migrate / Alembic entry point.

Usage:
    flask db migrate -m "description"
    flask db upgrade
    flask repair-ordering
"""

from template_engine import create_app

app = create_app()
