# Overview: WSGI/CLI entry point (FLASK_APP=wsgi.py).

from stockledger import create_app

app = create_app()
