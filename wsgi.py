"""
WSGI / Flask-Migrate entry point.

Usage:
    gunicorn wsgi:app
    flask --app wsgi db upgrade
    flask --app wsgi verify-audit-trail --organization-id 1
"""

from servicelog import create_app

app = create_app()
