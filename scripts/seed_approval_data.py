"""
Seed Approval Data — roles, demo users, a project and the default matrix.

Usage:
    python scripts/seed_approval_data.py              # Uses development DB
    python scripts/seed_approval_data.py --env prod   # Uses production DB
    python scripts/seed_approval_data.py --tokens     # Also print bearer tokens for the demo users

This script is idempotent — safe to run multiple times.
"""

import argparse
import os
import sys
from decimal import Decimal

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app import create_app
from app.models import db
from app.models.approval import ApprovalMatrixRule
from app.models.auth import Role, User, UserRole
from app.models.project import Project
from app.services.jwt_service import generate_access_token


# ═══════════════════════════════════════════════════════════════
# ROLES: capability flags, never role-code checks
# ═══════════════════════════════════════════════════════════════
ROLES = {
    "erp_admin": {
        "name": "ERP Administrator",
        "description": "Top administrator; may self-approve and override any step",
        "is_top_admin": True,
        "can_override_approvals": True,
    },
    "project_manager": {
        "name": "Project Manager",
        "description": "First-line approver for project documents",
    },
    "finance_manager": {
        "name": "Finance Manager",
        "description": "Approves invoices and payments",
    },
    "procurement_officer": {
        "name": "Procurement Officer",
        "description": "Raises purchase requisitions and orders",
    },
}

USERS = [
    # email, full name, department, role codes, manager email
    ("admin@erp.local", "ERP Admin", "IT", ["erp_admin"], None),
    ("pm@erp.local", "Pat Manager", "Projects", ["project_manager"], "admin@erp.local"),
    ("finance@erp.local", "Fran Finance", "Finance", ["finance_manager"], "admin@erp.local"),
    ("buyer@erp.local", "Bo Buyer", "Procurement", ["procurement_officer"], "pm@erp.local"),
]

# doc_type, role code, step order, min, max, escalation hours
MATRIX = [
    ("PR", "project_manager", 1, Decimal("0"), None, 24),
    ("PR", "erp_admin", 2, Decimal("1000000.01"), None, 48),
    ("PO", "project_manager", 1, Decimal("0"), None, 24),
    ("PO", "finance_manager", 1, Decimal("500000"), None, 24),
    ("AP_INVOICE", "finance_manager", 1, None, None, 48),
    ("PAYMENT", "finance_manager", 1, None, None, 24),
    ("PAYMENT", "erp_admin", 2, Decimal("1000000.01"), None, 24),
]


def seed_roles():
    created = 0
    for code, cfg in ROLES.items():
        role = Role.query.filter_by(code=code).first()
        if not role:
            role = Role(code=code)
            db.session.add(role)
            created += 1
        role.name = cfg["name"]
        role.description = cfg["description"]
        role.is_top_admin = cfg.get("is_top_admin", False)
        role.can_override_approvals = cfg.get("can_override_approvals", False)
        role.is_active = True
    db.session.commit()
    print(f"  Roles: {created} created, {len(ROLES) - created} already existed")


def seed_users():
    created = 0
    by_email = {}
    for email, full_name, department, role_codes, _ in USERS:
        user = User.query.filter_by(email=email).first()
        if not user:
            user = User(email=email, full_name=full_name, department=department)
            db.session.add(user)
            db.session.flush()
            created += 1
        by_email[email] = user
        for code in role_codes:
            role = Role.query.filter_by(code=code).first()
            if role and not UserRole.query.filter_by(user_id=user.id, role_id=role.id).first():
                db.session.add(UserRole(user_id=user.id, role_id=role.id))
    for email, _, _, _, manager_email in USERS:
        if manager_email:
            by_email[email].manager_id = by_email[manager_email].id
    db.session.commit()
    print(f"  Users: {created} created, {len(USERS) - created} already existed")
    return by_email


def seed_project():
    project = Project.query.filter_by(code="DEMO-001").first()
    if project:
        print(f"  Project: already exists (id={project.id})")
        return project
    project = Project(code="DEMO-001", name="Demo Plant Expansion")
    db.session.add(project)
    db.session.commit()
    print(f"  Project: created (id={project.id})")
    return project


def seed_matrix(admin):
    created = 0
    for doc_type, role_code, order, min_amount, max_amount, hours in MATRIX:
        role = Role.query.filter_by(code=role_code).first()
        exists = ApprovalMatrixRule.query.filter_by(
            doc_type=doc_type, project_id=None, role_id=role.id, step_order=order, is_active=True,
        ).first()
        if exists:
            continue
        db.session.add(ApprovalMatrixRule(
            doc_type=doc_type,
            project_id=None,
            min_amount=min_amount,
            max_amount=max_amount,
            role_id=role.id,
            step_order=order,
            escalation_hours=hours,
            created_by_id=admin.id,
        ))
        created += 1
    db.session.commit()
    print(f"  Matrix rules: {created} created, {len(MATRIX) - created} already existed")


def main():
    parser = argparse.ArgumentParser(description="Seed approval roles, demo users and matrix rules")
    parser.add_argument("--env", default="development", help="App environment")
    parser.add_argument("--tokens", action="store_true", help="Print bearer tokens for the demo users")
    args = parser.parse_args()

    os.environ.setdefault("APP_ENV", args.env)
    app = create_app(args.env)

    with app.app_context():
        print("=" * 60)
        print("  SEED: Approval roles, users, project & matrix")
        print("=" * 60)

        print("\nSeeding roles...")
        seed_roles()

        print("\nSeeding users...")
        users = seed_users()

        print("\nSeeding project...")
        seed_project()

        print("\nSeeding approval matrix...")
        seed_matrix(users["admin@erp.local"])

        if args.tokens:
            print("\nBearer tokens:")
            for email, user in users.items():
                print(f"  {email:<22} {generate_access_token(user.id, user.role_codes)}")

        print("\n" + "=" * 60)
        print("  Done.")
        print("=" * 60)


if __name__ == "__main__":
    main()
