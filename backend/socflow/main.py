from typing import Callable, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from socflow.core.config import settings
from socflow.core.logging import setup_logging
from socflow.database.db import SessionLocal, get_db, init_db
from socflow.routes import health, incidents, risk, siem
from socflow.services.pipeline import IncidentPipeline, build_pipeline


def create_app(
    session_factory: Optional[Callable[[], Session]] = None,
    pipeline: Optional[IncidentPipeline] = None,
) -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        description="Multi-agent security incident classification and SIEM response backend",
        version="1.0.0"
    )

    # CORS Configuration - Allow all origins for development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    factory = session_factory or SessionLocal
    app.state.pipeline = pipeline or build_pipeline(factory)

    if session_factory is not None:
        def _get_db():
            db = session_factory()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = _get_db

    # Health check is included at the root for easy access
    app.include_router(health.router)

    # V1 API Routes
    app.include_router(incidents.router, prefix="/api/v1", tags=["incidents"])
    app.include_router(siem.router, prefix="/api/v1", tags=["siem"])
    app.include_router(risk.router, prefix="/api/v1", tags=["risk"])

    @app.on_event("startup")
    def start_up():
        setup_logging()
        if session_factory is None:
            init_db()

    @app.on_event("shutdown")
    async def shut_down():
        await app.state.pipeline.shutdown()

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    # The run command recommended: uvicorn socflow.main:app --reload --host 0.0.0.0 --port 8000
    uvicorn.run("socflow.main:app", host="0.0.0.0", port=settings.PORT, reload=True)
