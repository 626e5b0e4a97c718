import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, File, HTTPException, Query, UploadFile
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from ..codebeamer import CodeBeamerClient, StagedFile
from ..deps import get_client
from ..errors import DownstreamError, DownstreamRejected
from ..schemas import FieldUpdateIn, ItemPage

LOG = logging.getLogger(__name__)

router = APIRouter(tags=["codebeamer"])


def _error_response(e: DownstreamError, what: str) -> JSONResponse:
    if isinstance(e, DownstreamRejected):
        if e.status_code == 401:
            return JSONResponse(
                status_code=401,
                content={
                    "success": False,
                    "error": "Authentication failed with external Codebeamer instance",
                    "details": e.body,
                },
            )
        if e.status_code == 404:
            return JSONResponse(status_code=404, content={"success": False, "error": f"{what}: not found", "details": e.body})
        return JSONResponse(status_code=502, content={"success": False, "error": f"{what}: {e}", "details": e.body})
    return JSONResponse(status_code=502, content={"success": False, "error": f"{what}: {e}"})


@router.get("/api/debug/ping")
def debug_ping(client: CodeBeamerClient = Depends(get_client)):
    return client.ping()


@router.get("/api/codebeamer/projects")
def projects(client: CodeBeamerClient = Depends(get_client)):
    try:
        return client.list_projects()
    except DownstreamError as e:
        return _error_response(e, "Failed to fetch projects")


@router.get("/api/codebeamer/projects/{project_id}/trackers")
def trackers(project_id: int, client: CodeBeamerClient = Depends(get_client)):
    try:
        return client.list_trackers(project_id)
    except DownstreamError as e:
        return _error_response(e, "Failed to fetch trackers")


@router.get("/api/codebeamer/trackers/{tracker_id}/items", response_model=ItemPage)
def tracker_items(
    tracker_id: int,
    page: int = Query(1, ge=1),
    pageSize: int = Query(1000, ge=1, le=1000),
    includeFields: bool = Query(False),
    maxItems: Optional[int] = Query(None, ge=1),
    client: CodeBeamerClient = Depends(get_client),
):
    try:
        items = client.fetch_tracker_items(tracker_id, max_items=maxItems, include_fields=includeFields)
    except DownstreamError as e:
        return _error_response(e, "Failed to fetch items")
    start = (page - 1) * pageSize
    chunk = items[start:start + pageSize]
    return {
        "items": chunk,
        "page": page,
        "pageSize": pageSize,
        "total": len(items),
        "hasMore": start + len(chunk) < len(items),
    }


@router.get("/api/codebeamer/items/{item_id}")
def item_detail(item_id: int, client: CodeBeamerClient = Depends(get_client)):
    try:
        return client.get_item(item_id)
    except DownstreamError as e:
        return _error_response(e, "Failed to fetch item")


@router.put("/api/codebeamer/items/{item_id}/fields")
def item_update_fields(item_id: int, payload: FieldUpdateIn, client: CodeBeamerClient = Depends(get_client)):
    if not payload.fieldValues:
        raise HTTPException(status_code=400, detail="No fields to update")
    values = [fv.model_dump(exclude_none=True) for fv in payload.fieldValues]
    try:
        result = client.update_fields(item_id, values)
    except DownstreamError as e:
        return _error_response(e, "Failed to update item")
    return {"success": True, "item": result}


@router.delete("/api/codebeamer/items/{item_id}")
def item_delete(item_id: int, client: CodeBeamerClient = Depends(get_client)):
    try:
        client.delete_item(item_id)
    except DownstreamError as e:
        return _error_response(e, "Failed to delete item")
    return {"success": True}


@router.post("/api/v3/trackers/{tracker_id}/items")
def item_create(tracker_id: int, payload: Dict[str, Any] = Body(...), client: CodeBeamerClient = Depends(get_client)):
    if not str(payload.get("name") or "").strip():
        raise HTTPException(status_code=400, detail="name is required")
    try:
        created = client.create_item(tracker_id, payload)
    except DownstreamError as e:
        return _error_response(e, "Failed to create item")
    return {"success": True, "item": created}


@router.post("/api/v3/items/{item_id}/attachments")
async def item_attachments(
    item_id: int,
    attachments: List[UploadFile] = File(...),
    client: CodeBeamerClient = Depends(get_client),
):
    staged = []
    for f in attachments:
        staged.append(
            StagedFile(
                filename=f.filename or "file.bin",
                content=await f.read(),
                content_type=f.content_type or "application/octet-stream",
            )
        )
    results = await run_in_threadpool(client.upload_attachments, item_id, staged)
    failures = [r.to_json() for r in results if not r.ok]
    if failures:
        LOG.warning("Item %s: %d of %d attachments failed", item_id, len(failures), len(results))
    return {
        "success": not failures,
        "attachments": [r.to_json() for r in results if r.ok],
        "failures": failures,
        "message": f"{len(results) - len(failures)} of {len(results)} attachments uploaded",
    }
