"""
Soft Delete Mixin.

Adds a `deleted_at` timestamp column. Users are never physically removed
because approval steps, delegations and audit rows keep pointing at them.

Usage:
    class User(SoftDeleteMixin, db.Model):
        ...

    user.soft_delete()
    db.session.commit()

    User.query_active().all()
"""

from datetime import datetime, timezone

from app.models import db


class SoftDeleteMixin:
    """Mixin that adds soft delete support to any SQLAlchemy model."""

    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True, default=None, index=True)

    def soft_delete(self):
        """Mark this record as deleted."""
        self.deleted_at = datetime.now(timezone.utc)

    def restore(self):
        self.deleted_at = None

    @property
    def is_deleted(self):
        return self.deleted_at is not None

    @classmethod
    def query_active(cls):
        """Return a query that excludes soft-deleted records."""
        return cls.query.filter(cls.deleted_at.is_(None))
