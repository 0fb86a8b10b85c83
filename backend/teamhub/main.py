import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from teamhub.core.config import settings
from teamhub.core.errors import TeamError
from teamhub.db.session import dispose_engine
import teamhub.models  # noqa: F401  # force model registration

from teamhub.api.v1.businesses import router as businesses_router
from teamhub.api.v1.team_members import router as team_members_router
from teamhub.api.v1.invitations import router as invitations_router

logger = logging.getLogger(__name__)


def create_application() -> FastAPI:
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        logger.info("Teamhub starting (environment=%s)", settings.ENVIRONMENT)
        yield
        await dispose_engine()

    app = FastAPI(title="Teamhub API", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(TeamError)
    async def team_error_handler(request: Request, exc: TeamError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_detail()})

    @app.get("/")
    def root():
        return {"status": "ok", "service": "teamhub"}

    # Routers
    app.include_router(businesses_router, prefix="/api/v1")
    app.include_router(team_members_router, prefix="/api/v1")
    app.include_router(invitations_router, prefix="/api/v1")

    return app


app = create_application()
