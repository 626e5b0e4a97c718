import logging
from typing import Callable, Optional

from fastapi import FastAPI, Request
from fastapi.responses import RedirectResponse

from . import __version__
from .auth import LoginRedirect, PortalSession, SessionStore
from .codebeamer import CodeBeamerClient
from .field_config import FieldConfigStore
from .routers import codebeamer, field_configs, pages
from .settings import Settings, load_settings

logger = logging.getLogger("doowon-portal")

ClientFactory = Callable[[Settings, PortalSession], CodeBeamerClient]


def default_client_factory(settings: Settings, session: PortalSession) -> CodeBeamerClient:
    return CodeBeamerClient(settings.cb_base_url, session.auth, timeout=settings.cb_timeout_seconds)


def create_app(settings: Optional[Settings] = None, *, client_factory: Optional[ClientFactory] = None) -> FastAPI:
    settings = settings or load_settings()
    app = FastAPI(title="Doowon Portal", version=__version__)
    app.state.settings = settings
    app.state.store = FieldConfigStore(settings.field_config_path)
    app.state.sessions = SessionStore(settings.session_secret, settings.session_max_age)
    app.state.client_factory = client_factory or default_client_factory

    @app.exception_handler(LoginRedirect)
    async def _login_redirect(request: Request, exc: LoginRedirect):
        return RedirectResponse(url="/login", status_code=303)

    @app.get("/health", include_in_schema=False)
    def health():
        return {"ok": True}

    # --- API (JSON) ---
    app.include_router(field_configs.router)
    app.include_router(codebeamer.router)
    # --- pages (HTML). "/{section}" 를 포함하므로 마지막 ---
    app.include_router(pages.router)

    if not settings.cb_base_url:
        logger.warning("CB_BASE_URL is not set; CodeBeamer calls will fail")
    logger.info("Field configs: %s", settings.field_config_path)
    return app


app = create_app()
