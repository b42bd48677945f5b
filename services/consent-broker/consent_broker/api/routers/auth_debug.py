from __future__ import annotations
from fastapi import APIRouter, Depends, HTTPException, status

from consent_broker.api.deps import get_auth_code_buffer
from consent_broker.api.schemas.consents import AuthCodeEntries, AuthCodeRecordRequest
from consent_broker.services.auth_code_buffer import AuthCodeBuffer

router = APIRouter(prefix="/debug", tags=["debug"])


@router.post("/auth-code", status_code=status.HTTP_201_CREATED, summary="Record a captured authorization code")
async def record_auth_code(payload: AuthCodeRecordRequest, buffer: AuthCodeBuffer = Depends(get_auth_code_buffer)):
    if not payload.code or not payload.code_verifier:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="code_and_code_verifier_required")
    record = buffer.add(payload.model_dump())
    return {"status": "stored", "record": record}


@router.get("/auth-code/latest", summary="Most recent authorization code")
async def latest_auth_code(buffer: AuthCodeBuffer = Depends(get_auth_code_buffer)):
    latest = buffer.latest()
    if latest is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not_found")
    return latest


@router.get("/auth-codes", response_model=AuthCodeEntries, summary="Recent authorization codes, newest first")
async def list_auth_codes(buffer: AuthCodeBuffer = Depends(get_auth_code_buffer)):
    return AuthCodeEntries(entries=buffer.entries())
