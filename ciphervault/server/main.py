import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ciphervault.client.commands import VaultCommands
from ciphervault.client.config import ConfigManager
from ciphervault.core.errors import (
    ConflictError,
    CryptoError,
    KeyDerivationError,
    NotFoundError,
    StorageUnavailableError,
    ValidationError,
    VaultError,
    VaultLockedError,
)
from ciphervault.core.log import setup_logging
from ciphervault.core.settings import Settings, get_settings

from .routers import config, storage, vault

logger = logging.getLogger(__name__)

# most specific first
STATUS_CODES = [
    (ValidationError, 400),
    (KeyDerivationError, 400),
    (CryptoError, 401),
    (NotFoundError, 404),
    (ConflictError, 409),
    (VaultLockedError, 423),
    (StorageUnavailableError, 503),
]


def status_for(exc: VaultError) -> int:
    for error_type, status_code in STATUS_CODES:
        if isinstance(exc, error_type):
            return status_code
    return 500


async def vault_error_handler(request: Request, exc: VaultError) -> JSONResponse:
    status_code = status_for(exc)
    if status_code >= 500:
        logger.warning("%s %s -> [%s] %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


def create_app(commands: Optional[VaultCommands] = None, settings: Optional[Settings] = None) -> FastAPI:
    """Run with ``uvicorn --factory ciphervault.server.main:create_app``."""
    settings = settings or get_settings()
    if commands is None:
        setup_logging(settings.LOG_LEVEL)
        commands = VaultCommands(ConfigManager(settings.config_path))

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version="1.0.0",
        openapi_url=f"{settings.API_V1_STR}/openapi.json",
    )
    app.state.commands = commands
    app.add_exception_handler(VaultError, vault_error_handler)

    app.include_router(vault.router, prefix=settings.API_V1_STR, tags=["Vault"])
    app.include_router(storage.router, prefix=f"{settings.API_V1_STR}/storage", tags=["Storage"])
    app.include_router(config.router, prefix=f"{settings.API_V1_STR}/config", tags=["Config"])

    @app.get("/")
    def root():
        return {"message": "CipherVault is running"}

    return app
