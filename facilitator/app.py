# module facilitator.app
from facilitator.app_setup.factory import create_app

# App globale
app = create_app()
