"""FastAPI app factory for the proptrace API."""

from fastapi import FastAPI

from proptrace.api.bulk import router as bulk_router
from proptrace.api.traces import router as traces_router
from proptrace.api.wallet import router as wallet_router


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI instance.
    """
    app = FastAPI(title="proptrace Trace API", version="0.1")
    app.include_router(traces_router)
    app.include_router(bulk_router)
    app.include_router(wallet_router)

    @app.get("/health", tags=["health"])
    def health():
        return {"status": "ok"}

    return app


# For uvicorn, expose `app` at module level
app = create_app()
