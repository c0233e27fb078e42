"""
asgi.py -- Application assembly for the SSO gateway.

This is the ONLY file that mounts both api/ and web/ routers on one app.
api/main.py knows nothing about web/; web/routes.py shares only the rate
limiter instance from api/limiter.py.

Run with:  uvicorn asgi:app --reload
           python main.py serve
"""

from api.main import app
from web.routes import router as web_router

# Mount the web UI router here, not in api/main.py.
app.include_router(web_router, tags=["Web UI"])
