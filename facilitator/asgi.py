"""
ASGI entrypoint: expose `app` pour les process managers (uvicorn, gunicorn + UvicornWorker).
Toute la configuration FastAPI est centralisée dans facilitator.app_setup.factory.
"""

from facilitator.app import app
