from __future__ import annotations

import os
from typing import Annotated

import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from tierflow import __version__
from tierflow.apps.runtime_support import OrchestratorRuntime, build_runtime
from tierflow.cli import base_parser
from tierflow.core.admin.schemas import (
    PreservationStatusModel,
    RollbackResultModel,
    SessionRecordModel,
    TierDiffModel,
    UpgradeRequest,
)
from tierflow.core.runtime.errors import (
    CancellationRejectedError,
    DataStoreUnavailableError,
    RetryRejectedError,
    RollbackNotAllowedError,
    SessionNotFoundError,
    TierflowError,
    UpgradeInProgressError,
    UpgradeValidationError,
)

_STATUS_BY_ERROR: list[tuple[type[TierflowError], int]] = [
    (SessionNotFoundError, 404),
    (UpgradeInProgressError, 409),
    (CancellationRejectedError, 409),
    (RetryRejectedError, 409),
    (RollbackNotAllowedError, 409),
    (UpgradeValidationError, 422),
    (DataStoreUnavailableError, 503),
]


def _status_for(exc: TierflowError) -> int:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return 500


def create_app(config_path: str | None = None, runtime: OrchestratorRuntime | None = None) -> FastAPI:
    runtime = runtime or build_runtime(config_path=config_path)
    executor = runtime.executor
    app = FastAPI(title="Tierflow Upgrade API", version=__version__)

    def _require_admin_token(x_admin_token: Annotated[str | None, Header()] = None) -> None:
        expected = os.getenv(runtime.cfg.api.admin_token_env, "").strip()
        if expected and x_admin_token != expected:
            raise HTTPException(status_code=401, detail="invalid_admin_token")

    @app.exception_handler(TierflowError)
    async def tierflow_error_handler(_request: Request, exc: TierflowError) -> JSONResponse:
        body = {"kind": exc.kind.value, "error": exc.__class__.__name__, "message": str(exc)}
        if isinstance(exc, UpgradeInProgressError):
            body["session_id"] = exc.session_id
        return JSONResponse(status_code=_status_for(exc), content=body)

    @app.get("/health")
    def health() -> dict:
        return {
            "status": "ok",
            "version": __version__,
            "environment": runtime.cfg.environment,
            "billing": runtime.billing.name,
        }

    @app.get("/tiers")
    def tiers() -> dict:
        return {"items": list(runtime.catalog.as_dict().values())}

    @app.get("/tiers/diff", response_model=TierDiffModel)
    def tier_diff(current: str = Query(...), target: str = Query(...)) -> TierDiffModel:
        diff = runtime.resolver.diff(current, target)
        return TierDiffModel(
            current_tier=diff.current_tier.value,
            target_tier=diff.target_tier.value,
            added_features=list(diff.added_features),
            removed_features=list(diff.removed_features),
            data_transforms=[t.key for t in diff.data_transforms],
            limit_changes={k: [old, new] for k, (old, new) in diff.limit_changes.items()},
            is_downgrade=diff.is_downgrade,
        )

    @app.post("/upgrades")
    async def create_upgrade(payload: UpgradeRequest, _=Depends(_require_admin_token)) -> JSONResponse:
        if payload.wait:
            outcome = await executor.upgrade(payload.user_id, payload.target_tier, payload.billing_interval)
            return JSONResponse(status_code=200, content=outcome.as_dict())
        session = await executor.begin(payload.user_id, payload.target_tier, payload.billing_interval)
        return JSONResponse(status_code=202, content=session.to_dict())

    @app.get("/upgrades/{session_id}")
    def get_upgrade(session_id: str) -> dict:
        try:
            return executor.outcome(session_id).as_dict()
        except SessionNotFoundError:
            row = runtime.journal.get(session_id)
            if row is None:
                raise
            record = SessionRecordModel.model_validate(row, from_attributes=True)
            return {"session": record.model_dump(mode="json"), "persisted_only": True}

    @app.get("/upgrades/{session_id}/events")
    def upgrade_events(session_id: str) -> dict:
        events = runtime.broadcaster.history(session_id)
        if events:
            return {"items": [e.as_dict() for e in events]}
        rows = runtime.journal.transitions(session_id)
        if not rows:
            raise SessionNotFoundError(f"unknown upgrade session: {session_id}")
        return {
            "items": [
                {
                    "session_id": r.session_id,
                    "state": r.state,
                    "message": r.message,
                    "progress_percent": r.progress_percent,
                    "at": r.created_at.isoformat(),
                }
                for r in rows
            ]
        }

    @app.post("/upgrades/{session_id}/cancel")
    def cancel_upgrade(session_id: str, _=Depends(_require_admin_token)) -> dict:
        session = executor.cancel(session_id)
        return {"session_id": session.session_id, "state": session.state.value, "cancel_requested": True}

    @app.post("/upgrades/{session_id}/rollback", response_model=RollbackResultModel)
    async def rollback_upgrade(session_id: str, _=Depends(_require_admin_token)) -> RollbackResultModel:
        result = await executor.rollback(session_id)
        return RollbackResultModel(**result.as_dict())

    @app.post("/upgrades/{session_id}/retry")
    async def retry_upgrade(session_id: str, _=Depends(_require_admin_token)) -> JSONResponse:
        session = await executor.retry(session_id)
        return JSONResponse(status_code=202, content=session.to_dict())

    @app.get("/users/{user_id}/preservation", response_model=PreservationStatusModel)
    async def preservation(user_id: str) -> PreservationStatusModel:
        status = await runtime.monitor().check(user_id)
        return PreservationStatusModel(user_id=user_id, **status.as_dict())

    @app.get("/users/{user_id}/upgrades")
    def user_upgrades(user_id: str, limit: int = Query(default=20, ge=1, le=200)) -> dict:
        rows = runtime.journal.list_sessions(user_id=user_id, limit=limit)
        return {"items": [SessionRecordModel.model_validate(r, from_attributes=True).model_dump(mode="json") for r in rows]}

    return app


def main() -> int:
    parser = base_parser("tierflow-api", "Tierflow upgrade API")
    parser.add_argument("--config", default=None, help="Config file path")
    parser.add_argument("--host", default=None)
    parser.add_argument("--port", type=int, default=None)
    args = parser.parse_args()
    return serve(config_path=args.config, host=args.host, port=args.port)


def serve(config_path: str | None = None, host: str | None = None, port: int | None = None) -> int:
    runtime = build_runtime(config_path=config_path)
    api = create_app(runtime=runtime)
    uvicorn.run(api, host=host or runtime.cfg.api.host, port=port or runtime.cfg.api.port, log_level="info")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
