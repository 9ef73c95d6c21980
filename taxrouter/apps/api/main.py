from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import AsyncIterator

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.utils import get_openapi
from starlette.exceptions import HTTPException as StarletteHTTPException

from taxrouter.apps.api.errors import (
    http_exception_handler,
    starlette_http_exception_handler,
    taxrouter_error_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from taxrouter.apps.api.response import API_PREFIX, API_VERSION, REQUEST_ID_HEADER, get_request_id
from taxrouter.apps.api.routes.affiliate_tokens import router as affiliate_tokens_router
from taxrouter.apps.api.routes.affiliates import router as affiliates_router
from taxrouter.apps.api.routes.affiliates_public import router as affiliates_public_router
from taxrouter.apps.api.routes.audit import router as audit_router
from taxrouter.apps.api.routes.clients import router as clients_router
from taxrouter.apps.api.routes.commissions import router as commissions_router
from taxrouter.apps.api.routes.discount_codes import router as discount_codes_router
from taxrouter.apps.api.routes.documents import router as documents_router
from taxrouter.apps.api.routes.employees import router as employees_router
from taxrouter.apps.api.routes.health import router as health_router
from taxrouter.apps.api.routes.portal import router as portal_router
from taxrouter.apps.api.routes.tenant_user import router as tenant_user_router
from taxrouter.apps.api.routes.tenants_admin import router as tenants_admin_router
from taxrouter.core.config import get_file_config, get_settings
from taxrouter.core.errors import TaxRouterError
from taxrouter.core.logging import configure_logging
from taxrouter.services.bootstrap import CoreServices, build_core_services


logger = logging.getLogger(__name__)

_PUBLIC_PATHS = {
    "/health",
    f"{API_PREFIX}/portal/validate",
    f"{API_PREFIX}/portal/exchange",
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    # An injected core (tests) is owned by the caller and left open.
    owned: CoreServices | None = None
    if getattr(app.state, "core", None) is None:
        owned = build_core_services(get_settings(), get_file_config())
        app.state.core = owned
    core: CoreServices = app.state.core
    core.start()
    logger.info("app_started environment=%s", core.settings.environment)
    try:
        yield
    finally:
        if owned is not None:
            await owned.close()
            app.state.core = None
        else:
            await core.cache.stop_eviction()
        logger.info("app_stopped")


def create_app(*, core: CoreServices | None = None) -> FastAPI:
    configure_logging()
    app = FastAPI(title="TaxRouter API", version=API_VERSION, lifespan=lifespan)
    app.state.core = core

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        request_id = get_request_id(request)
        response = await call_next(request)
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        return response

    cors = get_file_config().cors
    if cors.allowed_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cors.allowed_origins,
            allow_methods=cors.allowed_methods,
            allow_headers=cors.allowed_headers,
            allow_credentials=cors.allow_credentials,
        )

    @app.exception_handler(TaxRouterError)
    async def _taxrouter_error_handler(request: Request, exc: TaxRouterError):
        return await taxrouter_error_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    app.include_router(health_router)
    # Fixed-prefix routers go first so their paths are never read as a tenant id.
    app.include_router(tenants_admin_router, prefix=API_PREFIX)
    app.include_router(employees_router, prefix=API_PREFIX)
    app.include_router(audit_router, prefix=API_PREFIX)
    app.include_router(portal_router, prefix=API_PREFIX)
    # Tenant-scoped data plane: /api/v1/{tenant_id}/...
    app.include_router(clients_router, prefix=API_PREFIX)
    app.include_router(documents_router, prefix=API_PREFIX)
    app.include_router(affiliates_public_router, prefix=API_PREFIX)
    app.include_router(affiliate_tokens_router, prefix=API_PREFIX)
    app.include_router(affiliates_router, prefix=API_PREFIX)
    app.include_router(commissions_router, prefix=API_PREFIX)
    app.include_router(discount_codes_router, prefix=API_PREFIX)
    app.include_router(tenant_user_router, prefix=API_PREFIX)

    def custom_openapi() -> dict:
        # Inject bearer auth into the OpenAPI schema for every non-public operation.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(title="TaxRouter API", version=API_VERSION, routes=app.routes)
        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes["BearerAuth"] = {"type": "http", "scheme": "bearer"}
        for path, operations in schema.get("paths", {}).items():
            if path in _PUBLIC_PATHS:
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"BearerAuth": []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi  # type: ignore[method-assign]

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "taxrouter.apps.api.main:app",
        host="0.0.0.0",
        port=get_file_config().server.port,
        timeout_graceful_shutdown=get_settings().shutdown_grace_s,
    )
