# backend/wsgi.py
# FLASK_APP entrypoint: python -m flask --app wsgi.py <command>
from posledger import create_app

app = create_app()
