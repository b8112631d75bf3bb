"""
WokAPI auth service: OAuth login (GitHub, Google, Discord) and signed session cookies.
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlalchemy.exc import SQLAlchemyError

from wokauth.database import init_db
from wokauth.errors import ApiError, api_error_handler, storage_error_handler
from wokauth.routes import close_providers, get_providers
from wokauth.routes import router as auth_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables and build the provider registry on startup; close its HTTP client on shutdown."""
    init_db()
    get_providers()
    yield
    close_providers()


app = FastAPI(title="WokAPI Auth", version="1.0.0", lifespan=lifespan)
app.add_exception_handler(ApiError, api_error_handler)
app.add_exception_handler(SQLAlchemyError, storage_error_handler)
app.include_router(auth_router, tags=["auth"])


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok", "service": "wokauth"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "wokauth.main:app",
        host="127.0.0.1",
        port=8787,
        reload=True,
    )
