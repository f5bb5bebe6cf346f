"""ASGI entrypoint: uvicorn leadflow.api.app:app"""

from .factory import create_app

app = create_app()
