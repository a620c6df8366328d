#!/usr/bin/env python3
"""Entry point for the credential and SDP relay server.

Run with: uv run -m virtualsa.server
"""

import os

import uvicorn

from virtualsa.config import configure_logging, load_settings
from virtualsa.server.app import app

if __name__ == "__main__":
    settings = load_settings()
    configure_logging(settings.log_level)
    port = int(os.environ.get("PORT", "3000"))
    uvicorn.run(app, host="0.0.0.0", port=port)
