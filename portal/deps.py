from fastapi import Depends, HTTPException, Request

from .auth import PortalSession, require_login, require_page_login
from .codebeamer import CodeBeamerClient
from .field_config import FieldConfigStore
from .settings import Settings


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(request: Request) -> FieldConfigStore:
    return request.app.state.store


def _client_for(request: Request, session: PortalSession) -> CodeBeamerClient:
    factory = request.app.state.client_factory
    return factory(request.app.state.settings, session)


def get_client(request: Request, session: PortalSession = Depends(require_login)) -> CodeBeamerClient:
    return _client_for(request, session)


def get_page_client(request: Request, session: PortalSession = Depends(require_page_login)) -> CodeBeamerClient:
    return _client_for(request, session)


def known_section(section: str, store: FieldConfigStore = Depends(get_store)) -> str:
    if section not in store.load():
        raise HTTPException(status_code=404, detail=f"unknown section: {section}")
    return section
