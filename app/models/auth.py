"""
Auth Models — users, roles, user_roles.

Authentication itself lives outside the engine (tokens are issued by the
ERP identity service); these tables only answer "who holds which role"
and "who reports to whom" for approver resolution and escalation.

Role capability flags:
    is_top_admin            may self-approve, may cancel any request,
                            fallback escalation target
    can_override_approvals  may act on any step at the current order,
                            may manage delegations and matrix rules
"""

from datetime import datetime, timezone

from app.models import db
from app.models.soft_delete import SoftDeleteMixin


# ═══════════════════════════════════════════════════════════════
# 1. ROLES
# ═══════════════════════════════════════════════════════════════
class Role(db.Model):
    __tablename__ = "roles"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(50), unique=True, nullable=False)  # e.g. "project_manager"
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text)
    is_top_admin = db.Column(db.Boolean, nullable=False, default=False)
    can_override_approvals = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    # Relationships
    user_roles = db.relationship("UserRole", back_populates="role", lazy="dynamic")

    def to_dict(self):
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "description": self.description,
            "is_top_admin": self.is_top_admin,
            "can_override_approvals": self.can_override_approvals,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<Role {self.code}>"


# ═══════════════════════════════════════════════════════════════
# 2. USERS
# ═══════════════════════════════════════════════════════════════
class User(SoftDeleteMixin, db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(200), unique=True, nullable=False)
    full_name = db.Column(db.String(200))
    department = db.Column(db.String(100))
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    manager_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    # Relationships
    manager = db.relationship("User", remote_side=[id], foreign_keys=[manager_id])
    user_roles = db.relationship(
        "UserRole", back_populates="user", lazy="selectin",
        cascade="all, delete-orphan", foreign_keys="UserRole.user_id",
    )

    @property
    def roles(self):
        return [ur.role for ur in self.user_roles if ur.role is not None and ur.role.is_active]

    @property
    def role_ids(self):
        return {r.id for r in self.roles}

    @property
    def role_codes(self):
        return sorted(r.code for r in self.roles)

    @property
    def is_top_admin(self):
        return any(r.is_top_admin for r in self.roles)

    @property
    def can_override_approvals(self):
        return any(r.can_override_approvals or r.is_top_admin for r in self.roles)

    @property
    def is_available(self):
        """Active and not soft-deleted: the only users the engine routes work to."""
        return bool(self.is_active) and self.deleted_at is None

    def to_dict(self, include_roles=False):
        d = {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "department": self.department,
            "is_active": self.is_active,
            "manager_id": self.manager_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_roles:
            d["roles"] = self.role_codes
        return d

    def to_summary(self):
        return {"id": self.id, "full_name": self.full_name, "email": self.email}

    def __repr__(self):
        return f"<User {self.id}: {self.email}>"


# ═══════════════════════════════════════════════════════════════
# 3. USER_ROLES (Junction table)
# ═══════════════════════════════════════════════════════════════
class UserRole(db.Model):
    __tablename__ = "user_roles"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    role_id = db.Column(
        db.Integer, db.ForeignKey("roles.id", ondelete="CASCADE"), nullable=False, index=True
    )
    assigned_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.UniqueConstraint("user_id", "role_id", name="uq_user_role"),
    )

    # Relationships
    user = db.relationship("User", back_populates="user_roles", foreign_keys=[user_id])
    role = db.relationship("Role", back_populates="user_roles", lazy="joined")
