from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException
import logging
import uvicorn

from nfe_monitor.config import get_settings
from nfe_monitor.db.database import create_tables
from nfe_monitor.dependencies import get_status_monitor
from nfe_monitor.errors import NfeMonitorError
from nfe_monitor.routes.endpoints import router

settings = get_settings()

logging.basicConfig(level=settings.log_level.upper())
logger = logging.getLogger(__name__)

app = FastAPI(title="NF-e Monitor API")

app.include_router(router, prefix="/api")


def error_response(status_code: int, error: str, details=None):
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder({"success": False, "error": error, "details": details}),
    )


@app.exception_handler(NfeMonitorError)
async def handle_monitor_error(request: Request, exc: NfeMonitorError):
    logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return error_response(exc.status_code, exc.message, exc.details)


@app.exception_handler(StarletteHTTPException)
async def handle_http_error(request: Request, exc: StarletteHTTPException):
    return error_response(exc.status_code, str(exc.detail))


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError):
    return error_response(400, "Invalid request", exc.errors())


@app.on_event("startup")
async def startup():
    create_tables()
    if settings.monitor_autostart:
        logger.info("Starting SEFAZ monitoring...")
        await run_in_threadpool(get_status_monitor().start_monitoring)


@app.on_event("shutdown")
async def shutdown():
    get_status_monitor().shutdown()


@app.get("/")
async def root():
    return {
        "message": "NF-e Monitor API",
        "endpoints": {
            "lookup_document": "/api/document/<key>/lookup",
            "get_document": "/api/document/<key>",
            "get_document_xml": "/api/document/<key>/xml",
            "save_document_xml": "/api/document/<key>/save-xml",
            "list_documents": "/api/documents?page=<n>&limit=<n>",
            "rejected_documents": "/api/documents-rejected?page=<n>&limit=<n>",
            "status": "/api/status",
            "check_status": "/api/status/check",
            "status_history": "/api/status/history?limit=<n>",
            "start_monitoring": "/api/status/start-monitoring",
            "stop_monitoring": "/api/status/stop-monitoring",
        }
    }

if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8001)
