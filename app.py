"""FastAPI application entry point for Branch Chat."""

from contextlib import asynccontextmanager

from fastapi import FastAPI

from api import branches_router, conversations_router
from api.deps import initialize_all


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup: Initialize all services via DI
    await initialize_all()
    yield


# Create FastAPI app
app = FastAPI(
    title="Branch Chat",
    description="Chat backend with forkable conversations",
    version="1.0.0",
    lifespan=lifespan
)

# Branch routes first: /api/conversations/hierarchy must win over /{conversation_id}
app.include_router(branches_router)
app.include_router(conversations_router)


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("app:app", host="0.0.0.0", port=8079, reload=True)
