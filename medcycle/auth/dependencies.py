# medcycle/auth/dependencies.py
from __future__ import annotations

from typing import Optional

from fastapi import HTTPException, Request, Security, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from medcycle.auth.token_verifier import verify_access_token
from medcycle.services.orchestrator import MedicationOrchestrator

bearer_scheme = HTTPBearer(auto_error=False)


def get_current_patient_id(
    bearer: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
) -> str:
    if not bearer or bearer.scheme.lower() != "bearer":
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "missing Authorization header")

    payload = verify_access_token(bearer.credentials)
    if payload is None:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "invalid access token")

    return str(payload["sub"])


def get_orchestrator(request: Request) -> MedicationOrchestrator:
    # built once in create_app()
    return request.app.state.orchestrator
