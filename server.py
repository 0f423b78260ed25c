"""
ContextMatch - context-aware product recommendations from chat threads
HTTP server entrypoint
"""

import os

import uvicorn

from app.main import app


if __name__ == "__main__":
    print("ContextMatch starting...")
    uvicorn.run(
        app,
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8080")),
    )
