import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from .config import settings
from .errors import StorageError
from .models import BulkScreenshotRequest, ScreenshotFailure, ScreenshotResponse
from .screenshot_service import ScreenshotService

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

STATUS_BY_REASON = {
    "invalid_input": 400,
    "session_error": 503,
}


def status_for(response: ScreenshotResponse) -> int:
    if response.success:
        return 200
    return STATUS_BY_REASON.get(response.reason, 500)


def render(response: ScreenshotResponse) -> JSONResponse:
    return JSONResponse(
        content=response.model_dump(by_alias=True, exclude_none=True),
        status_code=status_for(response),
    )


def create_app(service: Optional[ScreenshotService] = None) -> FastAPI:
    screenshot_service = service or ScreenshotService()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        await screenshot_service.initialize()
        yield
        # Shutdown
        await screenshot_service.cleanup()

    app = FastAPI(
        title="Screenshot API",
        description="Capture screenshots of pages that resist automation",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.screenshot_service = screenshot_service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if settings.STORAGE_BACKEND == "local":
        os.makedirs(settings.STORAGE_DIR, exist_ok=True)
        app.mount("/blobs", StaticFiles(directory=settings.STORAGE_DIR), name="blobs")

    @app.get("/api/health")
    async def health_check():
        """Health check endpoint"""
        is_healthy = await screenshot_service.health_check()
        return JSONResponse(
            content={"status": "healthy" if is_healthy else "unhealthy", "service": "screenshot-api"},
            status_code=200 if is_healthy else 503,
        )

    @app.post("/api/screenshot")
    async def capture_screenshot(request: Request):
        """Capture one page from a JSON body"""
        try:
            payload = await request.json()
        except ValueError:
            return render(ScreenshotFailure(
                error="Invalid request", reason="invalid_input", details="Request body must be JSON"
            ))
        return render(await screenshot_service.take_screenshot(payload))

    @app.get("/api/screenshot")
    async def capture_screenshot_get(request: Request):
        """Capture one page from query parameters"""
        payload = dict(request.query_params)
        if not payload.get("url"):
            return render(ScreenshotFailure(
                error="Invalid request", reason="invalid_input", details="URL parameter is required"
            ))
        return render(await screenshot_service.take_screenshot(payload))

    @app.post("/api/screenshot/bulk")
    async def capture_screenshots_bulk(request: BulkScreenshotRequest):
        """Capture screenshots for multiple pages"""
        if not request.requests:
            raise HTTPException(status_code=400, detail="No requests provided")

        results = await screenshot_service.take_screenshots(request.requests)
        return {"results": [r.model_dump(by_alias=True, exclude_none=True) for r in results]}

    @app.get("/api/blob/list")
    async def list_blobs(prefix: Optional[str] = None, limit: int = 10):
        try:
            blobs = await screenshot_service.list_blobs(prefix, limit)
        except StorageError as e:
            logger.error("Blob list error: %s", e)
            return JSONResponse(
                content={"error": "Failed to list blobs", "details": e.details}, status_code=500
            )
        return {
            "success": True,
            "blobs": [
                {
                    "url": blob.url,
                    "downloadUrl": blob.download_url,
                    "pathname": blob.pathname,
                    "uploadedAt": blob.uploaded_at,
                }
                for blob in blobs
            ],
            "count": len(blobs),
        }

    @app.delete("/api/blob")
    async def delete_blob(url: Optional[str] = None):
        if not url:
            return JSONResponse(content={"error": "URL parameter is required"}, status_code=400)
        try:
            await screenshot_service.delete_blob(url)
        except StorageError as e:
            logger.error("Blob delete error: %s", e)
            return JSONResponse(
                content={"error": "Failed to delete blob", "details": e.details}, status_code=500
            )
        return {"success": True, "message": "Blob deleted successfully", "deletedUrl": url}

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.HOST, port=settings.PORT)
