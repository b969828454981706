"""
Administrative HTTP interface for phiguard.

Exposes lockout status and the emergency overrides behind an admin token.
An override runs only after its audit entry has been written; if the
trail cannot be written the override is refused.

Run with:
    uvicorn --factory phiguard.admin:create_admin_app
"""

from typing import Any, Callable, Dict, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from pydantic import BaseModel, Field

from . import config
from .attempts import AttemptTracker
from .audit import AuditCodec, AuditSink, JsonlFileAuditSink
from .encryption import EncryptionEngine
from .logging_config import security_log, set_request_id
from .stores import get_attempt_store, normalize_identity
from .util import constant_time_compare, mask_identity

AUDIT_RESOURCE = "failed_login_attempts"


class AuditWriteError(RuntimeError):
    """The audit entry for an override could not be written."""


class OverrideRequest(BaseModel):
    operator: str = Field(min_length=1, max_length=128)
    reason: str = Field(min_length=1, max_length=512)


def audited_override(
    codec: AuditCodec,
    sink: AuditSink,
    operation: str,
    operator: str,
    reason: str,
    run: Callable[[], Dict[str, Any]],
    **details
) -> Dict[str, Any]:
    """
    Audit an administrative override, then perform it.

    The entry (operator, reason and ``details``) is written before ``run``
    is called. If the sink fails, AuditWriteError is raised and the store
    is left untouched. The outcome returned by ``run`` goes to the
    security log.
    """
    entry = codec.create_entry(
        action=operation,
        resource=AUDIT_RESOURCE,
        details={"operator": operator, "reason": reason, **details},
    )
    try:
        sink.write(entry)
    except (OSError, ValueError) as e:
        security_log.audit_write_failure(operation, type(e).__name__)
        raise AuditWriteError(f"audit entry for {operation} not written") from e

    outcome = run()
    security_log.admin_override(operation, operator, reason, **details, **outcome)
    return outcome


def create_admin_app(
    tracker: Optional[AttemptTracker] = None,
    codec: Optional[AuditCodec] = None,
    audit_sink: Optional[AuditSink] = None,
    admin_token: Optional[str] = None,
) -> FastAPI:
    """
    Build the admin app.

    Collaborators default to ones built from configuration; a store the
    factory opens itself is closed on shutdown.
    """
    app = FastAPI(
        title="phiguard admin",
        docs_url=None if config.is_production() else "/docs",
        redoc_url=None,
    )
    token = config.ADMIN_TOKEN if admin_token is None else admin_token

    owned_store = None
    if tracker is None:
        owned_store = get_attempt_store().open()
        tracker = AttemptTracker(owned_store)
    if codec is None:
        codec = AuditCodec(EncryptionEngine())
    if audit_sink is None:
        audit_sink = JsonlFileAuditSink(config.AUDIT_LOG_PATH)

    @app.on_event("shutdown")
    def _shutdown():
        if owned_store is not None:
            owned_store.close()

    @app.middleware("http")
    async def _request_id(request: Request, call_next):
        rid = set_request_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = rid
        return response

    def require_admin(x_admin_token: Optional[str] = Header(default=None)):
        if not token:
            raise HTTPException(503, "ADMIN_DISABLED")
        if not x_admin_token or not constant_time_compare(x_admin_token, token):
            raise HTTPException(401, "UNAUTHORIZED")

    @app.get("/health")
    def health():
        """Liveness check; the only route served without the admin token."""
        return {"status": "ok"}

    @app.get("/lockouts", dependencies=[Depends(require_admin)])
    def list_lockouts():
        return [r.to_dict() for r in tracker.list_records()]

    @app.get("/lockouts/{identity}", dependencies=[Depends(require_admin)])
    def lockout_status(identity: str):
        status = tracker.get_attempt_status(identity)
        return {"identity": normalize_identity(identity), **status.to_dict()}

    def override(operation: str, req: OverrideRequest, run, **details):
        try:
            return audited_override(
                codec, audit_sink, operation, req.operator, req.reason, run, **details
            )
        except AuditWriteError as e:
            raise HTTPException(503, "AUDIT_UNAVAILABLE") from e

    @app.post("/lockouts/clear-all", dependencies=[Depends(require_admin)])
    def clear_all(req: OverrideRequest):
        outcome = override(
            "ADMIN_EMERGENCY_CLEAR_ALL", req,
            lambda: {"records_removed": tracker.emergency_clear_all()},
        )
        return {"cleared": outcome["records_removed"]}

    @app.post("/lockouts/{identity}/unblock", dependencies=[Depends(require_admin)])
    def unblock(identity: str, req: OverrideRequest):
        outcome = override(
            "ADMIN_EMERGENCY_UNBLOCK", req,
            lambda: {"record_existed": tracker.emergency_unblock(identity)},
            identity=mask_identity(normalize_identity(identity)),
        )
        return {"identity": normalize_identity(identity), "unblocked": outcome["record_existed"]}

    return app
