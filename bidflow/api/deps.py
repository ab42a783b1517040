"""
Shared FastAPI dependencies for the BidFlow API.

The ledger store, engines and identity resolver are built once by
``bidflow.main.create_app`` and kept on ``app.state``; route handlers
reach them through the ``Annotated`` aliases below.
"""

from __future__ import annotations

from typing import Annotated, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from bidflow.services.auth_service import Identity
from bidflow.services.bidEngine import BidEngine
from bidflow.services.escrowLedger import EscrowLedger
from bidflow.services.projectEngine import ProjectEngine
from bidflow.services.workflowOrchestrator import WorkflowOrchestrator


# ---------------------------------------------------------------------------
# Engines
# ---------------------------------------------------------------------------

def get_bid_engine(request: Request) -> BidEngine:
    return request.app.state.bid_engine


def get_project_engine(request: Request) -> ProjectEngine:
    return request.app.state.project_engine


def get_escrow_ledger(request: Request) -> EscrowLedger:
    return request.app.state.escrow_ledger


def get_orchestrator(request: Request) -> WorkflowOrchestrator:
    return request.app.state.orchestrator


Bids = Annotated[BidEngine, Depends(get_bid_engine)]
Projects = Annotated[ProjectEngine, Depends(get_project_engine)]
Escrow = Annotated[EscrowLedger, Depends(get_escrow_ledger)]
Orchestrator = Annotated[WorkflowOrchestrator, Depends(get_orchestrator)]


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

_bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_identity(
    request: Request,
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(_bearer_scheme)],
) -> Identity:
    """Resolve the Bearer token into the caller's ``Identity``.

    Raises 401 if the token is missing, expired or malformed.
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return request.app.state.identity_resolver.resolve(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
            headers={"WWW-Authenticate": "Bearer"},
        )


CurrentIdentity = Annotated[Identity, Depends(get_current_identity)]
