"""
Workflow Template Engine
Model package — shared SQLAlchemy handle.

All models import ``db`` from here:
    from template_engine.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
