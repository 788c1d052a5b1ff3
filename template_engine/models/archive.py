"""
Archive Mixin — soft delete for template hierarchy nodes.

Adds ``is_archived`` / ``archived_at`` columns and query helpers.
Archived rows stay in the table (other tasks may still point at them
through ``parent_task_id``) but drop out of listings and out of the
partial unique order indexes.

Usage:
    class TemplatePhase(ArchiveMixin, AuditMixin, db.Model):
        ...

    phase.archive()
    db.session.commit()

    TemplatePhase.query_active().filter_by(template_id=7).all()

    phase.restore()
    db.session.commit()
"""

from datetime import datetime, timezone

from template_engine.models import db


class ArchiveMixin:
    """Mixin that adds archive (soft delete) support to any SQLAlchemy model."""

    is_archived = db.Column(db.Boolean, nullable=False, default=False, index=True)
    archived_at = db.Column(db.DateTime(timezone=True), nullable=True, default=None)

    def archive(self):
        """Mark this record as archived."""
        self.is_archived = True
        self.archived_at = datetime.now(timezone.utc)

    def restore(self):
        """Bring an archived record back."""
        self.is_archived = False
        self.archived_at = None

    @classmethod
    def query_active(cls):
        """Return a query that excludes archived records."""
        return cls.query.filter(cls.is_archived.is_(False))

    @classmethod
    def query_archived(cls):
        """Return only archived records."""
        return cls.query.filter(cls.is_archived.is_(True))
