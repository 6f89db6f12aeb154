"""
API routers package
"""

from app.routers.webhook import router as webhook_router
from app.routers.videos import router as videos_router
from app.routers.jobs import router as jobs_router
