"""GitVizLytics - GitHub profile analytics API (session service)."""
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from vizlytics.config import get_settings

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup: build the session store and the GitHub client
    from vizlytics.services.github import GitHubClient
    from vizlytics.services.ratelimit import RateLimiter
    from vizlytics.services.session_store import create_session_store

    store = create_session_store(settings)
    purged = store.purge_expired()
    if purged:
        logger.info(f"Purged {purged} expired session(s)")

    app.state.session_store = store
    app.state.github_client = GitHubClient(settings)
    app.state.rate_limiter = RateLimiter()

    yield

    # Shutdown
    app.state.github_client.close()
    store.close()


app = FastAPI(
    title=settings.app_name,
    description="GitHub OAuth login, session issuance and token rotation",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=list(dict.fromkeys([settings.client_url, *settings.cors_origins])),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "app": settings.app_name}


# Import and include routers
from vizlytics.api import auth  # noqa: E402

app.include_router(auth.router, prefix="/api")
