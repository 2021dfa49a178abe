#!/usr/bin/env python3
"""Entry point for the vision job API and its background scheduler."""
import os

import uvicorn

PORT = int(os.getenv("VISION_PORT", 8000))
HOST = os.getenv("VISION_HOST", "0.0.0.0")
RELOAD = os.getenv("VISION_DEV", "false").lower() == "true"


if __name__ == "__main__":
    uvicorn.run(
        "vision_pipeline.main:app",
        host=HOST,
        port=PORT,
        reload=RELOAD,
        log_level="info",
    )
