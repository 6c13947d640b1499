"""ASGI entry point: `uvicorn main:app`.

Reads the manifest from ASR_CONFIG_PATH and drives Docker containers on
ASR_DOCKER_NETWORK. See asr/settings.py for all environment variables.
"""
from asr.api import create_app

app = create_app()
