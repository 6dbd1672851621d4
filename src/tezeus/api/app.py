"""ASGI entrypoint: ``uvicorn tezeus.api.app:app``."""

from .factory import create_app

app = create_app()
