"""FastAPI application that exposes the user lifecycle operations."""
from __future__ import annotations

from datetime import datetime
from typing import Dict, Iterable, List, Optional, Union

from fastapi import APIRouter, Depends, FastAPI, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from .audit import AuditEvent, SqliteAuditSink
from .errors import BackendError, DbError, LockError, NotFoundError, PanelError, ValidationError
from .models import STATUSES, StoreMetadata, UserRecord, ordered_services
from .orchestrator import AccountUpdate, LifecycleOrchestrator
from .security import TokenAuth

_ERROR_STATUS = (
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (LockError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (DbError, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (BackendError, status.HTTP_502_BAD_GATEWAY),
)


class UserResponse(BaseModel):
    username: str
    status: str
    services: List[str]
    created_at: datetime
    expiry: Optional[datetime]
    never_expires: bool
    last_modified: datetime
    configs_generated: int


class CreateUserRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=64)
    services: Union[str, List[str]] = Field(default_factory=lambda: ["ssh", "proxy"])
    expiry: Union[int, str] = 30
    secret: Optional[str] = Field(default=None, max_length=128)

    @field_validator("username")
    @classmethod
    def _strip_username(cls, value: str) -> str:
        return value.strip()


class CreateUserResponse(BaseModel):
    user: UserResponse
    secret: str


class UpdateExpiryRequest(BaseModel):
    expiry: Union[int, str]

    @field_validator("expiry")
    @classmethod
    def _strip_expiry(cls, value: Union[int, str]) -> Union[int, str]:
        if isinstance(value, str):
            stripped = value.strip()
            if not stripped:
                raise ValueError("expiry must not be empty")
            return stripped
        return value


class AccountUpdateResponse(BaseModel):
    user: UserResponse
    reprovisioned: bool
    secret: Optional[str] = None


class SweepResponse(BaseModel):
    changed: bool


class StatsResponse(BaseModel):
    total_count: int
    active_count: int
    created_at: datetime
    updated_at: datetime
    revision: int


class AuditEventResponse(BaseModel):
    timestamp: datetime
    event_code: str
    username: str
    description: str
    status: str


def user_to_response(record: UserRecord) -> UserResponse:
    return UserResponse(
        username=record.username,
        status=record.status,
        services=ordered_services(record.services),
        created_at=record.created_at,
        expiry=record.expiry,
        never_expires=record.never_expires,
        last_modified=record.last_modified,
        configs_generated=record.configs_generated,
    )


def update_to_response(update: AccountUpdate) -> AccountUpdateResponse:
    return AccountUpdateResponse(
        user=user_to_response(update.record),
        reprovisioned=update.reprovisioned,
        secret=update.secret,
    )


def stats_to_response(metadata: StoreMetadata) -> StatsResponse:
    return StatsResponse(
        total_count=metadata.total_count,
        active_count=metadata.active_count,
        created_at=metadata.created_at,
        updated_at=metadata.updated_at,
        revision=metadata.revision,
    )


def event_to_response(event: AuditEvent) -> AuditEventResponse:
    return AuditEventResponse(**event.to_dict())


def error_payload(exc: PanelError) -> Dict[str, object]:
    payload: Dict[str, object] = {"detail": str(exc), "stage": exc.stage}
    if isinstance(exc, BackendError):
        payload["services"] = list(exc.services)
    return payload


def create_app(
    orchestrator: LifecycleOrchestrator,
    *,
    tokens: Iterable[str],
    audit: SqliteAuditSink | None = None,
) -> FastAPI:
    auth = TokenAuth(tokens)

    app = FastAPI(
        title="VPN Panel",
        description="User lifecycle management for the login and proxy backends",
        version="1.0.0",
    )
    app.state.orchestrator = orchestrator

    @app.get("/health")
    async def healthcheck() -> Dict[str, str]:
        return {"status": "ok"}

    # Lifecycle calls block on file locks and backend commands, so the
    # handlers are plain functions and run in the threadpool.
    protected_router = APIRouter(prefix="/v1", dependencies=[Depends(auth)])

    @protected_router.get("/users", response_model=List[UserResponse])
    def list_users(
        status_filter: Optional[str] = Query(default=None, alias="status"),
        pattern: Optional[str] = Query(default=None, max_length=100),
    ) -> List[UserResponse]:
        if status_filter is not None and status_filter not in STATUSES:
            raise ValidationError(f"Unknown status '{status_filter}'", field="status")
        records = orchestrator.list_users(status=status_filter, pattern=pattern)
        return [user_to_response(record) for record in records]

    @protected_router.post("/users", response_model=CreateUserResponse, status_code=status.HTTP_201_CREATED)
    def create_user(payload: CreateUserRequest) -> CreateUserResponse:
        created = orchestrator.create(
            payload.username,
            payload.services,
            payload.expiry,
            secret=payload.secret,
        )
        return CreateUserResponse(user=user_to_response(created.record), secret=created.secret)

    @protected_router.get("/users/{username}", response_model=UserResponse)
    def read_user(username: str) -> UserResponse:
        return user_to_response(orchestrator.get_user(username))

    @protected_router.put("/users/{username}/expiry", response_model=AccountUpdateResponse)
    def update_expiry(username: str, payload: UpdateExpiryRequest) -> AccountUpdateResponse:
        return update_to_response(orchestrator.update_expiry(username, payload.expiry))

    @protected_router.post("/users/{username}/disable", response_model=UserResponse)
    def disable_user(username: str) -> UserResponse:
        return user_to_response(orchestrator.disable(username))

    @protected_router.post("/users/{username}/enable", response_model=AccountUpdateResponse)
    def enable_user(username: str) -> AccountUpdateResponse:
        return update_to_response(orchestrator.enable(username))

    @protected_router.post("/users/{username}/configs", response_model=UserResponse)
    def record_config(username: str) -> UserResponse:
        return user_to_response(orchestrator.record_config_generated(username))

    @protected_router.delete("/users/{username}", response_model=UserResponse)
    def delete_user(username: str, force: bool = False) -> UserResponse:
        return user_to_response(orchestrator.delete(username, force=force))

    @protected_router.post("/sweep", response_model=SweepResponse)
    def run_sweep() -> SweepResponse:
        return SweepResponse(changed=orchestrator.expire_sweep())

    @protected_router.get("/stats", response_model=StatsResponse)
    def read_stats() -> StatsResponse:
        return stats_to_response(orchestrator.stats())

    @protected_router.get("/audit", response_model=List[AuditEventResponse])
    def read_audit(
        limit: int = Query(default=20, ge=1, le=500),
        username: Optional[str] = Query(default=None, max_length=64),
    ) -> List[AuditEventResponse]:
        if audit is None:
            return []
        return [event_to_response(event) for event in audit.recent(limit, username=username)]

    app.include_router(protected_router)

    @app.exception_handler(PanelError)
    async def handle_panel_error(_: object, exc: PanelError):
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
        for error_cls, mapped in _ERROR_STATUS:
            if isinstance(exc, error_cls):
                code = mapped
                break
        return JSONResponse(status_code=code, content=error_payload(exc))

    return app


__all__ = ["create_app", "user_to_response", "error_payload"]
