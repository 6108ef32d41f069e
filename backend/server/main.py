"""
Development server entry point.

    voice-session-server           # console script
    uvicorn server.asgi:app        # equivalent, from backend/
"""

from __future__ import annotations

import os

import uvicorn
from dotenv import load_dotenv


def main() -> None:
    """Run the ASGI app under uvicorn."""
    load_dotenv()

    uvicorn.run(
        "server.asgi:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
        reload=os.getenv("ENV", "dev") == "dev",
    )


if __name__ == "__main__":
    main()
