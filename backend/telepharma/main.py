# /telepharma/main.py

import os
import time
import uvicorn
from fastapi import FastAPI, Request

from telepharma.config.settings import settings
from telepharma.utils.lifecycle import lifespan
from telepharma.utils.metrics import response_time_histogram
from telepharma.routes import webhooks, public

# Initialize the FastAPI application
app = FastAPI(
    title="Telepharma WhatsApp Assistant",
    version="1.0.0",
    description="WhatsApp registration and medication ordering assistant",
    lifespan=lifespan,
    openapi_url=f"/api/{settings.api_version}/openapi.json" if settings.environment != "production" else None,
    docs_url=f"/api/{settings.api_version}/docs" if settings.environment != "production" else None,
    redoc_url=None,
)


@app.middleware("http")
async def performance_middleware(request: Request, call_next):
    start_time = time.time()
    response = await call_next(request)
    process_time = time.time() - start_time
    response_time_histogram.labels(endpoint=request.url.path).observe(process_time)
    response.headers["X-Process-Time"] = str(process_time)
    return response

# --- API Routers ---
app.include_router(public.router)
app.include_router(webhooks.router, prefix=f"/api/{settings.api_version}/webhooks")

# --- Main Entry Point for Uvicorn (for local development) ---
if __name__ == "__main__":
    port = int(os.getenv("PORT", "8000"))
    host = os.getenv("HOST", "127.0.0.1")

    uvicorn.run(
        "telepharma.main:app",
        host=host,
        port=port,
        reload=settings.environment == "development",
    )
