"""
Registre central des routers.
- Auth: nonce SIWE, vérification, profil, clés API
- Facilitateur x402: verify, settle, supported
- Sessions: vues payeur, vues serveur de ressources, job de capture
- Health
"""
from fastapi import FastAPI
from facilitator.auth.views import api_router as auth_api_router, keys_router
from facilitator.payments import views as payments_views
from facilitator.ledger.views import capture_router, payer_router, sessions_router
from facilitator.health.router import router as health_router


def register_routers(app: FastAPI) -> None:
    # Auth
    app.include_router(auth_api_router)
    app.include_router(keys_router)
    # Facilitateur
    app.include_router(payments_views.router)
    # Sessions
    app.include_router(payer_router)
    app.include_router(sessions_router)
    app.include_router(capture_router)
    # Health & monitoring
    app.include_router(health_router)
