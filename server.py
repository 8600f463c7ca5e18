"""
OpsMemory - operational memory for a homelab assistant
FastAPI admin API + MCP tools over SQLite or PostgreSQL
"""

import os

import uvicorn

from app.main import asgi_app

# Re-exported for `uvicorn server:asgi_app`
app = asgi_app


# =============================================================================
# Main
# =============================================================================

if __name__ == "__main__":
    host = os.environ.get("HOST", "0.0.0.0")
    port = int(os.environ.get("PORT", "8080"))
    print("OpsMemory starting...")
    uvicorn.run(asgi_app, host=host, port=port)
