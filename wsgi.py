"""
WSGI / Flask-Migrate entry point.

Usage:
    flask --app wsgi db upgrade
    flask --app wsgi add-reviewer alice --role decision_maker --department IT
    gunicorn wsgi:app
"""

from compliance_approvals import create_app

app = create_app()
