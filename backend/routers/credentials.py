# routers/credentials.py — Credential vault endpoints
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, require_admin, CurrentUser
from database import get_db_session
from encryption import CredentialCipher, get_cipher
from models import CredentialMethod
from telemetry_aggregator import TelemetryAggregator, get_aggregator
from vault import CredentialVault, credential_out

router = APIRouter(prefix="/api/v1", tags=["Credential Vault"])


# --- Schemas ---

class CredentialSubmit(BaseModel):
    credential_type: str = Field(..., min_length=1, max_length=100)
    method: CredentialMethod
    payload: dict = Field(default_factory=dict)
    reference: Optional[str] = Field(default=None, max_length=2000)


class RevokeRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class ReadinessRequest(BaseModel):
    required_types: List[str] = Field(default_factory=list)


def _vault(
    db: AsyncSession = Depends(get_db_session),
    cipher: CredentialCipher = Depends(get_cipher),
    aggregator: TelemetryAggregator = Depends(get_aggregator),
) -> CredentialVault:
    return CredentialVault(db, cipher, aggregator)


# --- Endpoints ---

@router.post("/activations/{request_id}/credentials", status_code=201)
async def submit_credential(
    request_id: str,
    data: CredentialSubmit,
    user: CurrentUser = Depends(get_current_user),
    vault: CredentialVault = Depends(_vault),
):
    """Store a credential hand-off (reference, link or invite; never a raw secret)"""
    credential = await vault.submit(
        request_id, data.credential_type.strip(), data.method, data.payload,
        requester=user, reference=data.reference,
    )
    return credential_out(credential)


@router.get("/activations/{request_id}/credentials")
async def list_credentials(
    request_id: str,
    user: CurrentUser = Depends(get_current_user),
    vault: CredentialVault = Depends(_vault),
):
    """Credential metadata for a request. No secret material."""
    credentials = await vault.list_credentials(request_id, user)
    return {"items": [credential_out(c) for c in credentials], "count": len(credentials)}


@router.post("/activations/{request_id}/credentials/reveal")
async def reveal_credentials(
    request_id: str,
    user: CurrentUser = Depends(get_current_user),
    vault: CredentialVault = Depends(_vault),
):
    """Decrypt live credentials; the first reveal per request is stamped"""
    view = await vault.reveal(request_id, user)
    return view.to_dict()


@router.post("/activations/{request_id}/readiness")
async def credential_readiness(
    request_id: str,
    data: ReadinessRequest,
    user: CurrentUser = Depends(get_current_user),
    vault: CredentialVault = Depends(_vault),
):
    return await vault.readiness(request_id, data.required_types, user)


@router.post("/credentials/{credential_id}/revoke")
async def revoke_credential(
    credential_id: str,
    data: RevokeRequest,
    user: CurrentUser = Depends(get_current_user),
    vault: CredentialVault = Depends(_vault),
):
    credential = await vault.revoke(credential_id, user, data.reason)
    return credential_out(credential)


@router.post("/credentials/{credential_id}/confirm")
async def confirm_credential(
    credential_id: str,
    user: CurrentUser = Depends(require_admin),
    vault: CredentialVault = Depends(_vault),
):
    """Operator confirms a secure link or invite was accepted"""
    credential = await vault.confirm(credential_id)
    return credential_out(credential)
