from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import Response
from pydantic import BaseModel
from typing import Optional
import logging

from ..config import Settings, get_settings
from ..dependencies import get_document_service, get_status_monitor
from ..services.document_lookup import DocumentLookupService, DocumentPage
from ..services.status_monitor import StatusMonitor

router = APIRouter()

logger = logging.getLogger(__name__)


class SaveXmlRequest(BaseModel):
    directory: Optional[str] = None


def success(**payload):
    return {"success": True, **payload}


def pagination(result: DocumentPage):
    return {
        "page": result.page,
        "limit": result.limit,
        "total": result.total,
        "pages": result.pages,
    }


def require_simulation(
    settings: Settings = Depends(get_settings),
    monitor: StatusMonitor = Depends(get_status_monitor),
) -> StatusMonitor:
    if settings.is_production:
        raise HTTPException(status_code=404, detail="Simulation is only available outside production")
    if not monitor.simulated:
        raise HTTPException(status_code=404, detail="Simulation is disabled: SEFAZ status is probed for real")
    return monitor


@router.get("/health")
async def health():
    return {
        "success": True,
        "status": "online",
        "message": "NF-e query API running",
        "version": "1.0.0",
    }


# -- documents -----------------------------------------------------------

@router.get("/document/{key}/lookup")
def lookup_document(key: str, service: DocumentLookupService = Depends(get_document_service)):
    result = service.lookup(key)
    return success(data=result.record.to_dict(), fromCache=result.from_cache)


@router.get("/document/{key}/xml")
def get_document_xml(key: str, service: DocumentLookupService = Depends(get_document_service)):
    xml_content = service.fetch_raw_document(key)
    return Response(
        content=xml_content,
        media_type="application/xml",
        headers={"Content-Disposition": f'attachment; filename="nfe-{key}.xml"'},
    )


@router.post("/document/{key}/save-xml")
def save_document_xml(
    key: str,
    body: Optional[SaveXmlRequest] = None,
    service: DocumentLookupService = Depends(get_document_service),
):
    try:
        file_path = service.save_raw_document(key, body.directory if body else None)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return success(message="XML saved successfully", filePath=str(file_path))


@router.get("/document/{key}")
def get_document(key: str, service: DocumentLookupService = Depends(get_document_service)):
    return success(data=service.get_cached(key).to_dict())


@router.get("/documents")
def list_documents(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    service: DocumentLookupService = Depends(get_document_service),
):
    result = service.list_documents(limit=limit, offset=(page - 1) * limit)
    return success(data=[record.to_dict() for record in result.records], **pagination(result))


@router.get("/documents-rejected")
def list_rejected_documents(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    service: DocumentLookupService = Depends(get_document_service),
):
    result = service.list_rejected(limit=limit, offset=(page - 1) * limit)
    if result.degraded:
        logger.warning(f"Serving degraded rejected list: {result.message}")

    return success(
        data=[record.to_dict() for record in result.records],
        degraded=result.degraded,
        message=result.message,
        **pagination(result),
    )


# -- SEFAZ status --------------------------------------------------------

@router.get("/status")
def get_status(monitor: StatusMonitor = Depends(get_status_monitor)):
    return success(data=monitor.get_current_status().to_dict())


@router.get("/status/check")
def check_status(monitor: StatusMonitor = Depends(get_status_monitor)):
    return success(data=monitor.probe().to_dict())


@router.get("/status/history")
def get_status_history(
    limit: int = Query(20, ge=1, le=500),
    monitor: StatusMonitor = Depends(get_status_monitor),
):
    return success(data=[record.to_dict() for record in monitor.get_history(limit)])


@router.post("/status/start-monitoring")
def start_monitoring(monitor: StatusMonitor = Depends(get_status_monitor)):
    started = monitor.start_monitoring()
    message = "Monitoring started" if started else "Monitoring already running"
    return success(message=message, data={"running": monitor.is_running, "started": started})


@router.post("/status/stop-monitoring")
def stop_monitoring(monitor: StatusMonitor = Depends(get_status_monitor)):
    stopped = monitor.stop_monitoring()
    message = "Monitoring stopped" if stopped else "Monitoring was not running"
    return success(message=message, data={"running": monitor.is_running, "stopped": stopped})


@router.get("/status/simulate")
def get_simulated_status(monitor: StatusMonitor = Depends(require_simulation)):
    return success(data=monitor.get_simulated_status().to_dict())


@router.post("/status/simulate/toggle")
def toggle_simulated_status(monitor: StatusMonitor = Depends(require_simulation)):
    online = monitor.toggle_simulated_status()
    return success(
        data={"online": online},
        message=f"Status changed to: {'Online' if online else 'Offline'}",
    )
