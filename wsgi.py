"""
WSGI / Flask-Migrate entry point.

Usage:
    flask --app wsgi db upgrade
    flask --app wsgi dispatch-notifications
    gunicorn wsgi:app
"""

from bpm import create_app

app = create_app()
