"""
Factory d'application utilisée par les entrypoints (facilitator.app, facilitator.asgi).
Ordonne les étapes d'initialisation de manière lisible et testable.
"""
from fastapi import FastAPI
from .lifespan import lifespan
from .middlewares import register_basic_middlewares, register_request_id_middleware, register_security_middleware
from .exception_handlers import register_exception_handlers
from .routers import register_routers


def create_app() -> FastAPI:
    """
    Construit l'app FastAPI avec le lifespan et enregistre:
      - middlewares (CORS, TrustedHost, en-têtes de sécurité, X-Request-ID)
      - gestionnaires d'exceptions
      - tous les routers (auth, facilitateur, sessions, health)
    """
    app = FastAPI(title="x402 Escrow Facilitator", lifespan=lifespan)
    register_basic_middlewares(app)
    register_security_middleware(app)
    register_request_id_middleware(app)
    register_exception_handlers(app)
    register_routers(app)
    return app
