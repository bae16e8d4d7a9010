"""HTTP adapter over the lifecycle manager.

Each route is a thin translation: parse the request, call one manager operation, and
map typed failures to status codes via the AvlError handler.
"""
from __future__ import annotations

import secrets
from contextlib import asynccontextmanager
from typing import Any

from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from starlette.background import BackgroundTask

from . import __version__
from .errors import AvlError, ValidationError
from .manager import LifecycleManager
from .reconciler import Reconciler

_bearer = HTTPBearer(auto_error=False)


def create_app(manager: LifecycleManager, admin_key: str | None = None, reconciler: Reconciler | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if reconciler is not None:
            reconciler.start()
        try:
            yield
        finally:
            if reconciler is not None:
                reconciler.stop()

    app = FastAPI(title="avalauncher", version=__version__, lifespan=lifespan)

    def _authenticated(creds: HTTPAuthorizationCredentials | None) -> bool:
        if not admin_key or creds is None:
            return False
        return secrets.compare_digest(creds.credentials, admin_key)

    def require_bearer(creds: HTTPAuthorizationCredentials | None = Depends(_bearer)) -> None:
        if not _authenticated(creds):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="unauthorized")

    @app.exception_handler(AvlError)
    async def _avl_error(request: Request, exc: AvlError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def _request_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        msgs = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()]
        return JSONResponse(status_code=400, content=ValidationError("; ".join(msgs)).to_dict())

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "version": __version__}

    @app.get("/api/status")
    def api_status(creds: HTTPAuthorizationCredentials | None = Depends(_bearer)) -> dict[str, Any]:
        authenticated = _authenticated(creds)
        resp = {"version": __version__, **manager.status(include_nodes=authenticated)}
        if authenticated:
            resp["authenticated"] = True
        return resp

    api = APIRouter(prefix="/api", dependencies=[Depends(require_bearer)])

    # -- hosts ---------------------------------------------------------------

    @api.post("/hosts", status_code=status.HTTP_201_CREATED)
    def create_host(payload: Any = Body(...)) -> dict[str, Any]:
        return manager.create_host(payload).to_dict()

    @api.get("/hosts")
    def list_hosts() -> list[dict[str, Any]]:
        return [h.to_dict() for h in manager.list_hosts()]

    @api.get("/hosts/{host_id}")
    def get_host(host_id: int) -> dict[str, Any]:
        return manager.get_host(host_id).to_dict()

    @api.delete("/hosts/{host_id}")
    def delete_host(host_id: int) -> dict[str, str]:
        manager.delete_host(host_id)
        return {"status": "deleted"}

    # -- nodes ---------------------------------------------------------------

    @api.post("/nodes", status_code=status.HTTP_201_CREATED)
    def create_node(payload: Any = Body(...)) -> dict[str, Any]:
        return manager.create_node(payload).to_dict()

    @api.get("/nodes")
    def list_nodes() -> list[dict[str, Any]]:
        return [n.to_dict() for n in manager.list_nodes()]

    @api.get("/nodes/{node_id}")
    def get_node(node_id: int) -> dict[str, Any]:
        return manager.get_node(node_id).to_dict()

    @api.post("/nodes/{node_id}/start")
    def start_node(node_id: int) -> dict[str, Any]:
        node = manager.start_node(node_id)
        return {"status": "started", "node": node.to_dict()}

    @api.post("/nodes/{node_id}/stop")
    def stop_node(node_id: int) -> dict[str, Any]:
        node = manager.stop_node(node_id)
        return {"status": "stopped", "node": node.to_dict()}

    @api.delete("/nodes/{node_id}")
    def delete_node(node_id: int, remove_volumes: bool = False) -> dict[str, Any]:
        node = manager.delete_node(node_id, remove_volumes=remove_volumes)
        return {"status": "deleted", "node": node.to_dict()}

    @api.put("/nodes/{node_id}/identity")
    def set_identity(node_id: int, payload: Any = Body(...)) -> dict[str, Any]:
        return manager.set_node_identity(node_id, payload).to_dict()

    @api.get("/nodes/{node_id}/logs")
    def node_logs(node_id: int, tail: str = "", follow: bool = False) -> StreamingResponse:
        stream = manager.node_logs(node_id, tail, follow=follow)
        return StreamingResponse(
            iter(stream),
            media_type="text/plain; charset=utf-8",
            background=BackgroundTask(stream.close),
        )

    # -- L1 bindings ---------------------------------------------------------

    @api.post("/nodes/{node_id}/l1s", status_code=status.HTTP_201_CREATED)
    def bind_l1(node_id: int, payload: Any = Body(...)) -> dict[str, Any]:
        return manager.bind_l1(node_id, payload).to_dict()

    @api.get("/nodes/{node_id}/l1s")
    def node_l1s(node_id: int) -> list[dict[str, Any]]:
        return [b.to_dict() for b in manager.list_l1s(node_id)]

    @api.get("/l1s")
    def list_l1s() -> list[dict[str, Any]]:
        return [b.to_dict() for b in manager.list_l1s()]

    @api.delete("/l1s/{binding_id}")
    def unbind_l1(binding_id: int) -> dict[str, str]:
        manager.unbind_l1(binding_id)
        return {"status": "deleted"}

    # -- events --------------------------------------------------------------

    @api.get("/events")
    def list_events(limit: str | None = None) -> list[dict[str, Any]]:
        """Newest events first.

        ``limit`` is lenient: a missing, non-numeric or non-positive value means the
        default (``AVL_EVENTS_DEFAULT_LIMIT``). The count is capped at ``AVL_EVENTS_MAX_LIMIT``:
        a larger request gets that many rows, not every row it asked for.
        """
        return [e.to_dict() for e in manager.list_events(limit)]

    app.include_router(api)
    return app
