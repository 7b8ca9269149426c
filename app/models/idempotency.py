"""
ERP Approval Engine
Idempotency model.

Models:
    - IdempotencyRecord: cached response for a client-supplied Idempotency-Key
"""

from datetime import datetime, timezone

from app.models import db


class IdempotencyRecord(db.Model):
    """
    One processed mutating request.

    ``request_hash`` is the SHA-256 of route + canonical JSON body;
    ``response_body`` holds the raw response text so a replay is byte-identical.
    """

    __tablename__ = "idempotency_keys"

    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(255), unique=True, nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=True, index=True)
    route = db.Column(db.String(255), nullable=False)
    request_hash = db.Column(db.String(64), nullable=False)
    response_body = db.Column(db.Text, nullable=False)
    status_code = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    def to_dict(self):
        return {
            "id": self.id,
            "key": self.key,
            "user_id": self.user_id,
            "route": self.route,
            "request_hash": self.request_hash,
            "status_code": self.status_code,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }

    def __repr__(self):
        return f"<IdempotencyRecord {self.key} {self.route} [{self.status_code}]>"
