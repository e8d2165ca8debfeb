"""
FastAPI Server for the IAM Provisioner.

Provides REST API endpoints for declaring account resources, triggering
reconcile passes and reading status and audit records.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Query
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, ConfigDict, Field

from ..config import Components, load_config
from ..engine import PersistError, group_diff
from ..models import AccountResource, AccountSpec, ReconcileResult

logger = logging.getLogger(__name__)


class AccountRequest(BaseModel):
    """Account declaration request."""
    model_config = ConfigDict(populate_by_name=True)

    user_name: str = Field(..., alias="userName", min_length=1, description="IAM user name")
    groups: List[str] = Field(default_factory=list, description="Desired group memberships")


class AccountResponse(BaseModel):
    """Account resource response."""
    name: str
    user_name: str
    groups: List[str]
    account_state: str
    user_groups: List[str]
    resource_version: int
    created_at: str
    updated_at: str


class DiffResponse(BaseModel):
    """Group difference response."""
    name: str
    to_add: List[str]
    to_remove: List[str]


class AuditResponse(BaseModel):
    """Audit record response."""
    id: str
    timestamp: str
    resource_name: str
    user_name: str
    stage: str
    action: str
    target: str
    success: bool
    error_message: Optional[str]
    reconcile_id: Optional[str]


# Global components (initialized on startup)
components: Optional[Components] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global components

    logger.info("Initializing IAM Provisioner API server components")
    components = Components(load_config())
    logger.info(f"IAM Provisioner API server ready (mock_mode={components.config['mock_mode']})")

    yield

    logger.info("Shutting down IAM Provisioner API server")
    components.stop_event.set()


app = FastAPI(
    title="IAM Provisioner API",
    description="Declarative IAM account provisioning - REST API",
    version="1.0.0",
    lifespan=lifespan,
)


def _components() -> Components:
    if components is None:
        raise HTTPException(status_code=503, detail="Provisioner components not available")
    return components


def _to_response(resource: AccountResource) -> AccountResponse:
    return AccountResponse(
        name=resource.name,
        user_name=resource.spec.user_name,
        groups=resource.spec.groups,
        account_state=resource.status.account_state.value,
        user_groups=resource.status.user_groups,
        resource_version=resource.resource_version,
        created_at=resource.created_at.isoformat(),
        updated_at=resource.updated_at.isoformat(),
    )


@app.get("/")
async def root():
    """Root endpoint."""
    return {"message": "IAM Provisioner API", "version": "1.0.0", "status": "running"}


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "components": {
            "store": components is not None,
            "iam_client": components is not None and components.iam_client is not None,
            "audit_logger": components is not None and components.audit_logger is not None,
        },
        "mock_mode": components.config["mock_mode"] if components else None,
    }


@app.get("/accounts", response_model=List[AccountResponse])
async def list_accounts(
    state: Optional[str] = Query(None, description="Filter by account state"),
    limit: int = Query(100, description="Maximum number of results"),
):
    """List account resources."""
    resources = _components().store.list_resources()
    if state:
        resources = [r for r in resources if r.status.account_state.value == state]
    return [_to_response(r) for r in resources[:limit]]


@app.get("/accounts/{name}", response_model=AccountResponse)
async def get_account(name: str):
    """Get one account resource."""
    resource = _components().store.get(name)
    if not resource:
        raise HTTPException(status_code=404, detail=f"Account {name} not found")
    return _to_response(resource)


@app.put("/accounts/{name}", response_model=AccountResponse)
async def put_account(name: str, request: AccountRequest):
    """Declare an account or update its desired spec."""
    resource = AccountResource(
        name=name,
        spec=AccountSpec(user_name=request.user_name, groups=request.groups),
    )
    try:
        stored = _components().store.apply(resource)
    except PersistError as e:
        raise HTTPException(status_code=503, detail=str(e)) from e
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    return _to_response(stored)


@app.delete("/accounts/{name}")
async def delete_account(name: str):
    """Remove an account resource from the store. The IAM user is left untouched."""
    try:
        deleted = _components().store.delete(name)
    except PersistError as e:
        raise HTTPException(status_code=503, detail=str(e)) from e
    if not deleted:
        raise HTTPException(status_code=404, detail=f"Account {name} not found")
    return {"deleted": name}


@app.post("/accounts/{name}/reconcile", response_model=ReconcileResult)
async def reconcile_account(name: str):
    """Run one reconcile pass synchronously and return its result."""
    result = await run_in_threadpool(_components().controller.reconcile_now, name)
    if result is None:
        raise HTTPException(status_code=409, detail=f"Account {name} is being reconciled")
    if not result.found:
        raise HTTPException(status_code=404, detail=f"Account {name} not found")
    return result


@app.get("/accounts/{name}/diff", response_model=DiffResponse)
async def get_account_diff(name: str):
    """Groups to join and groups no longer desired."""
    resource = _components().store.get(name)
    if not resource:
        raise HTTPException(status_code=404, detail=f"Account {name} not found")

    to_add, to_remove = group_diff(resource.spec.groups, resource.status.user_groups)
    return DiffResponse(name=name, to_add=to_add, to_remove=to_remove)


@app.get("/audit", response_model=List[AuditResponse])
async def get_audit_logs(
    resource_name: Optional[str] = Query(None, description="Filter by resource name"),
    limit: int = Query(100, description="Maximum number of results"),
):
    """Get audit records, most recent first."""
    records = _components().audit_logger.get_events(resource_name=resource_name, limit=limit)
    return [
        AuditResponse(
            id=r.id,
            timestamp=r.timestamp.isoformat(),
            resource_name=r.resource_name,
            user_name=r.user_name,
            stage=r.stage,
            action=r.action,
            target=r.target,
            success=r.success,
            error_message=r.error_message,
            reconcile_id=r.reconcile_id,
        )
        for r in records
    ]


@app.get("/stats")
async def get_stats():
    """Resource statistics."""
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "resources": _components().store.get_summary(),
    }


def start_server(host: str = "0.0.0.0", port: int = 8000, reload: bool = False):
    """Start the FastAPI server."""
    uvicorn.run(
        "iam_provisioner.api.server:app",
        host=host,
        port=port,
        reload=reload,
        log_level="info",
    )


if __name__ == "__main__":
    start_server()
