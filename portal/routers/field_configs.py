from fastapi import APIRouter, Depends, HTTPException

from ..auth import require_login
from ..errors import ConfigSaveError, ConfigVersionConflict, SectionNotFound
from ..deps import get_store
from ..field_config import FieldConfigStore, section_map_to_json
from ..schemas import FieldConfigSaveIn

router = APIRouter(prefix="/api", tags=["field-configs"], dependencies=[Depends(require_login)])


@router.get("/field-configs")
def all_field_configs(store: FieldConfigStore = Depends(get_store)):
    doc = store.load_document()
    return {"success": True, **doc.to_json()}


@router.get("/field-configs/{section}")
def section_field_configs(section: str, store: FieldConfigStore = Depends(get_store)):
    try:
        fields = store.get_section(section)
    except SectionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    return {"success": True, "fieldConfigs": [f.to_json() for f in fields]}


@router.post("/field-configs")
def save_field_configs(payload: FieldConfigSaveIn, store: FieldConfigStore = Depends(get_store)):
    try:
        doc = store.save_or_raise(
            payload.fieldConfigs,
            section_titles=payload.sectionTitles,
            tracker_ids=payload.trackerIds,
            expected_version=payload.expectedLastUpdated,
        )
    except ConfigVersionConflict as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except ConfigSaveError as e:
        # 검증 실패(중복 id 등)는 400, 파일 쓰기 실패는 500
        status = 500 if isinstance(e.__cause__, OSError) else 400
        raise HTTPException(status_code=status, detail=str(e)) from e
    return {
        "success": True,
        "fieldConfigs": section_map_to_json(doc.field_configs),
        "lastUpdated": doc.last_updated,
    }


@router.get("/tracker-id/{section}")
def tracker_id(section: str, store: FieldConfigStore = Depends(get_store)):
    tid = store.tracker_id(section)
    if tid is None:
        return {"success": False, "trackerId": None, "error": f"tracker not configured: {section}"}
    return {"success": True, "trackerId": tid}
