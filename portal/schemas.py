from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# --- field configs ---
class FieldConfigSaveIn(BaseModel):
    fieldConfigs: Dict[str, List[Dict[str, Any]]]
    sectionTitles: Optional[Dict[str, str]] = None
    trackerIds: Optional[Dict[str, Any]] = None
    expectedLastUpdated: Optional[str] = None


# --- CodeBeamer proxy ---
class FieldValueIn(BaseModel):
    fieldId: int
    type: str = "TextFieldValue"
    name: Optional[str] = None
    value: Any = None


class FieldUpdateIn(BaseModel):
    fieldValues: List[FieldValueIn] = Field(default_factory=list)


class ItemPage(BaseModel):
    items: List[Dict[str, Any]]
    page: int
    pageSize: int
    total: int
    hasMore: bool
