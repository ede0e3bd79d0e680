from __future__ import annotations

import logging
import secrets
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from msr import db
from msr.api_models import GlobalUpgradeRequest, UpgradeServiceRequest
from msr.catalog import UnknownService
from msr.docker_ops import RuntimeUnavailable
from msr.fleet import Fleet

LOG_FORMAT = "[%(asctime)s] [%(levelname)-8s] [%(name)s] %(message)s"

security = HTTPBasic(auto_error=False)


def _fleet(request: Request) -> Fleet:
    return request.app.state.fleet


def _check_credentials(fleet: Fleet, credentials: HTTPBasicCredentials | None) -> str:
    s = fleet.settings
    if not s.admin_password:
        return "anonymous"
    if credentials is None or not (
        secrets.compare_digest(credentials.username, s.admin_user)
        and secrets.compare_digest(credentials.password, s.admin_password)
    ):
        raise HTTPException(status_code=401, detail="Invalid credentials", headers={"WWW-Authenticate": "Basic"})
    return credentials.username


def require_admin(request: Request, credentials: HTTPBasicCredentials | None = Depends(security)) -> str:
    return _check_credentials(_fleet(request), credentials)


def require_reader(request: Request, credentials: HTTPBasicCredentials | None = Depends(security)) -> str:
    fleet = _fleet(request)
    if fleet.settings.allow_anonymous_reads:
        return "anonymous"
    return _check_credentials(fleet, credentials)


def create_app(fleet: Fleet | None = None) -> FastAPI:
    fleet = fleet or Fleet.from_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logging.basicConfig(level=fleet.settings.log_level.upper(), format=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
        db.init_db()
        fleet.start()
        try:
            yield
        finally:
            fleet.stop()

    app = FastAPI(title="Media Stack Reconciler", lifespan=lifespan)
    app.state.fleet = fleet

    # --- read side ---

    @app.get("/api/services")
    def list_services(category: str | None = None, _: str = Depends(require_reader)) -> list[dict[str, Any]]:
        try:
            views = fleet.publisher.snapshot(category)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown category '{category}'")
        return [v.to_dict() for v in views.values()]

    @app.get("/api/services/versions")
    def versions(_: str = Depends(require_reader)) -> dict[str, Any]:
        return fleet.publisher.versions(is_upgrading_global=fleet.orchestrator.is_global_upgrading)

    @app.get("/api/services/{identity}")
    def get_service(identity: str, _: str = Depends(require_reader)) -> dict[str, Any]:
        try:
            return fleet.publisher.get(identity).to_dict()
        except UnknownService as e:
            raise HTTPException(status_code=404, detail=str(e))

    @app.get("/api/stats")
    def stats(_: str = Depends(require_reader)) -> dict[str, int]:
        return fleet.publisher.stats().to_dict()

    @app.get("/api/containers/status")
    def containers_status(_: str = Depends(require_reader)) -> dict[str, Any]:
        try:
            facts = fleet.container_status()
        except RuntimeUnavailable as e:
            raise HTTPException(status_code=502, detail=str(e))
        return {k: f.to_dict() for k, f in facts.items()}

    @app.get("/api/system/info")
    def system_info(_: str = Depends(require_reader)) -> dict[str, Any]:
        try:
            return fleet.runtime.system_info()
        except RuntimeUnavailable as e:
            raise HTTPException(status_code=502, detail=str(e))

    @app.get("/api/service/{identity}/logs")
    def service_logs(
        identity: str, tail: int | None = Query(None, ge=1, le=10000), _: str = Depends(require_reader)
    ) -> dict[str, str]:
        try:
            return {"logs": fleet.logs(identity, tail)}
        except UnknownService as e:
            raise HTTPException(status_code=404, detail=str(e))
        except RuntimeUnavailable as e:
            raise HTTPException(status_code=502, detail=str(e))

    @app.get("/api/upgrades")
    def upgrades(limit: int = Query(50, ge=1, le=1000), service: str | None = None, _: str = Depends(require_reader)):
        return db.upgrade_history(limit=limit, service_name=service)

    @app.get("/events")
    def events(limit: int = Query(100, ge=1, le=1000), service: str | None = None, _: str = Depends(require_reader)):
        return db.latest_events(limit=limit, service_name=service)

    # --- mutating side ---

    @app.post("/api/service/{identity}/{action}")
    def control(identity: str, action: str, user: str = Depends(require_admin)) -> dict[str, Any]:
        try:
            fleet.control(identity, action)
        except UnknownService as e:
            raise HTTPException(status_code=404, detail=str(e))
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except RuntimeUnavailable as e:
            raise HTTPException(status_code=502, detail=str(e))
        return {"success": True}

    @app.post("/api/services/versions/check")
    def check_versions(user: str = Depends(require_admin)) -> dict[str, Any]:
        fleet.tracker.check_for_updates()
        out = fleet.publisher.versions(is_upgrading_global=fleet.orchestrator.is_global_upgrading)
        out["error"] = fleet.tracker.last_error
        return out

    @app.post("/api/services/upgrade")
    def upgrade_service(req: UpgradeServiceRequest, user: str = Depends(require_admin)) -> dict[str, Any]:
        try:
            outcome = fleet.orchestrator.upgrade_service(req.service, req.action)
        except UnknownService as e:
            raise HTTPException(status_code=404, detail=str(e))
        if outcome.rejected:
            raise HTTPException(status_code=409, detail=outcome.error)
        return outcome.to_dict()

    @app.post("/api/services/restart")
    def restart_all(user: str = Depends(require_admin)) -> dict[str, Any]:
        try:
            result = fleet.runtime.restart_all_services()
        except RuntimeUnavailable as e:
            raise HTTPException(status_code=502, detail=str(e))
        db.log_event("INFO" if result.success else "WARN", f"Fleet restart requested by {user}")
        return result.to_dict()

    @app.post("/api/platform/upgrade")
    def global_upgrade(req: GlobalUpgradeRequest | None = None, user: str = Depends(require_admin)) -> dict[str, Any]:
        action = req.action if req else GlobalUpgradeRequest().action
        result = fleet.orchestrator.global_upgrade(action)
        if not result.accepted:
            raise HTTPException(status_code=409, detail=result.message)
        return result.to_dict()

    return app


app = create_app()
