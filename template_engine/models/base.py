"""
AuditMixin — who/when columns shared by every template table.

``created_by`` / ``updated_by`` hold the acting user's identifier as sent
by the caller (the engine does not authenticate).
"""

from datetime import datetime, timezone

from template_engine.models import db


def _utcnow():
    return datetime.now(timezone.utc)


class AuditMixin:
    """Adds created/updated audit columns."""

    created_by = db.Column(db.String(255), nullable=False, default="system")
    updated_by = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow,
    )

    def touch(self, actor):
        """Record *actor* as the last editor."""
        self.updated_by = actor

    def _audit_dict(self) -> dict:
        return {
            "created_by": self.created_by,
            "updated_by": self.updated_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
