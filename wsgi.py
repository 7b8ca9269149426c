"""
WSGI / Flask-Migrate entry point for the approval engine.

Usage:
    gunicorn wsgi:app
    flask --app wsgi db upgrade        # apply migrations/versions
    flask --app wsgi db migrate -m "description"

Set SCHEDULER_ENABLED=false when running several gunicorn workers and use
scripts/run_escalation_worker.py as the single job runner instead.
"""

from app import create_app

app = create_app()
