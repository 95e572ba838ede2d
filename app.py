"""
MarketCycle — KOL market cycle orchestrator.

Serves the operator API and runs the cycle scheduler in the same process.

Run with:
  uvicorn app:app --port 8080
"""

import uvicorn

from marketcycle.api.app import create_app
from marketcycle.config import get_settings

app = create_app()


if __name__ == "__main__":
    uvicorn.run("app:app", host="0.0.0.0", port=get_settings().port)
