# backend/wsgi.py
from fitsense import create_app

app = create_app()
