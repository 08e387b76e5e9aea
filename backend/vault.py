# vault.py — Per-request credential vault
"""
Credentials are stored only as AES-GCM ciphertext and decrypted at the
boundary to an authorised requester.

Free text is screened before anything is written: a value that looks like a
raw secret (provider key prefixes, bearer tokens, JWTs, private keys, long
opaque tokens) is rejected with LIKELY_SECRET_LEAK and nothing is stored.
Customers are expected to hand over a *reference* to where a secret lives,
or an invite/authorisation link, never the secret itself.
"""
import logging
import re
from dataclasses import dataclass
from typing import Iterable, Iterator, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

import audit
from activation import VisibleStatus, apply_transition, ensure_access, get_request, to_visible
from auth import CurrentUser
from encryption import CredentialCipher
from errors import CoreError, ErrorKind
from models import (
    ActivationCredential, ActivationRequest, CredentialMethod, CredentialStatus,
    LogLevel, utcnow,
)
from telemetry_aggregator import TelemetryAggregator

logger = logging.getLogger("aerelion.vault")

VAULT_FUNCTION = "activation-credentials"

METHOD_LABELS = {
    CredentialMethod.DELEGATED_AUTH_LINK: "OAuth / Secure Link",
    CredentialMethod.INVITED_ACCOUNT: "User Invitation",
    CredentialMethod.KEY_REFERENCE: "API Key Reference",
    CredentialMethod.OTHER: "Other",
}

# Methods whose hand-off must be confirmed by an operator before use
CONFIRMATION_METHODS = {CredentialMethod.DELEGATED_AUTH_LINK, CredentialMethod.INVITED_ACCOUNT}

# ============================================================
# SECRET SCREENING
# ============================================================

SECRET_PATTERNS = [
    ("stripe_key", re.compile(r"\b(?:sk|pk|rk)_(?:live|test)_[A-Za-z0-9]{8,}")),
    ("openai_key", re.compile(r"\bsk-(?:proj-)?[A-Za-z0-9_\-]{16,}")),
    ("slack_token", re.compile(r"\bxox[abposr]-[A-Za-z0-9\-]{10,}")),
    ("github_token", re.compile(r"\b(?:gh[pousr]_[A-Za-z0-9]{20,}|github_pat_[A-Za-z0-9_]{20,})")),
    ("aws_access_key", re.compile(r"\b(?:AKIA|ASIA)[A-Z0-9]{16}\b")),
    ("google_api_key", re.compile(r"\bAIza[0-9A-Za-z_\-]{30,}")),
    ("bearer_token", re.compile(r"\bbearer\s+[A-Za-z0-9\-._~+/]{16,}=*", re.IGNORECASE)),
    ("jwt", re.compile(r"\beyJ[A-Za-z0-9_\-]{8,}\.[A-Za-z0-9_\-]{8,}\.[A-Za-z0-9_\-]{8,}")),
    ("private_key", re.compile(r"-----BEGIN [A-Z ]*PRIVATE KEY-----")),
    ("key_assignment", re.compile(
        r"\b(?:api[_-]?key|secret|password|passwd|token)\s*[:=]\s*\S{8,}", re.IGNORECASE,
    )),
]

_URL = re.compile(r"https?://\S+", re.IGNORECASE)
_OPAQUE_TOKEN = re.compile(r"[A-Za-z0-9_\-+/=]{32,}")


def _looks_opaque(token: str) -> bool:
    # Long runs that mix letters and digits; plain words and paths don't qualify
    return bool(re.search(r"[A-Za-z]", token)) and bool(re.search(r"\d", token))


def find_secret(text: str) -> Optional[str]:
    """Name of the first secret-shaped pattern found in ``text``, if any."""
    if not text:
        return None
    for name, pattern in SECRET_PATTERNS:
        if pattern.search(text):
            return name
    # Links legitimately carry long opaque ids; only the prose around them counts
    prose = _URL.sub(" ", text)
    for match in _OPAQUE_TOKEN.finditer(prose):
        if _looks_opaque(match.group(0)):
            return "opaque_token"
    return None


def _strings(value) -> Iterator[str]:
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for k, v in value.items():
            yield str(k)
            yield from _strings(v)
    elif isinstance(value, (list, tuple)):
        for v in value:
            yield from _strings(v)


def screen_free_text(payload: Optional[dict], reference: Optional[str], support_ref: Optional[str] = None) -> None:
    for text in _strings([reference or "", payload or {}]):
        kind = find_secret(text)
        if kind:
            logger.warning(f"Credential submission rejected: {kind} pattern in free text")
            raise CoreError(
                ErrorKind.LIKELY_SECRET_LEAK,
                "That looks like a raw secret. Never paste keys or tokens here: store the secret "
                "in your password manager and submit a reference to it, or use a secure link or invite.",
                support_ref,
            )


# ============================================================
# VIEWS
# ============================================================

@dataclass(frozen=True)
class RevealedCredential:
    id: str
    credential_type: str
    method: str
    status: str
    data: Optional[dict]
    error: Optional[str] = None


@dataclass(frozen=True)
class RevealView:
    request_id: str
    first_view: bool
    first_viewed_at: Optional[str]
    credentials: List[RevealedCredential]

    def to_dict(self) -> dict:
        return {
            "request_id": self.request_id,
            "first_view": self.first_view,
            "first_viewed_at": self.first_viewed_at,
            "credentials": [c.__dict__ for c in self.credentials],
        }


def credential_out(c: ActivationCredential) -> dict:
    method = CredentialMethod(c.method)
    return {
        "id": c.id,
        "request_id": c.request_id,
        "credential_type": c.credential_type,
        "method": method.value,
        "method_label": METHOD_LABELS[method],
        "status": CredentialStatus(c.status).value,
        "created_at": c.created_at.isoformat() if c.created_at else None,
        "confirmed_at": c.confirmed_at.isoformat() if c.confirmed_at else None,
        "revoked_at": c.revoked_at.isoformat() if c.revoked_at else None,
        "revocation_reason": c.revocation_reason,
    }


# ============================================================
# VAULT
# ============================================================

class CredentialVault:

    def __init__(self, db: AsyncSession, cipher: CredentialCipher,
                 aggregator: Optional[TelemetryAggregator] = None):
        self.db = db
        self.cipher = cipher
        self.aggregator = aggregator

    async def _owned_request(self, request_id: str, requester: CurrentUser) -> ActivationRequest:
        request = await get_request(self.db, request_id)
        ensure_access(requester, request)
        return request

    async def _credential(self, credential_id: str) -> ActivationCredential:
        result = await self.db.execute(
            select(ActivationCredential).where(ActivationCredential.id == credential_id)
        )
        credential = result.scalar_one_or_none()
        if not credential:
            raise CoreError(ErrorKind.NOT_FOUND, "Credential not found", credential_id)
        return credential

    async def _recount(self, request: ActivationRequest) -> int:
        result = await self.db.execute(
            select(func.count(ActivationCredential.id)).where(
                ActivationCredential.request_id == request.id,
                ActivationCredential.status == CredentialStatus.ACTIVE,
            )
        )
        request.credentials_count = result.scalar() or 0
        return request.credentials_count

    async def submit(
        self,
        request_id: str,
        credential_type: str,
        method: CredentialMethod,
        payload: Optional[dict],
        requester: CurrentUser,
        reference: Optional[str] = None,
    ) -> ActivationCredential:
        """Encrypt and store a credential, superseding earlier ones of the same type."""
        screen_free_text(payload, reference, support_ref=request_id)
        method = CredentialMethod(method)
        request = await self._owned_request(request_id, requester)
        if to_visible(request.status) in (VisibleStatus.COMPLETED, VisibleStatus.CANCELLED):
            raise CoreError(ErrorKind.INVALID_TRANSITION, "This activation is closed", request_id)

        body = dict(payload or {})
        if reference:
            body["reference"] = reference
        ciphertext, nonce = self.cipher.encrypt(body)

        now = utcnow()
        credential = ActivationCredential(
            request_id=request.id,
            credential_type=credential_type,
            method=method,
            status=CredentialStatus.PENDING if method in CONFIRMATION_METHODS else CredentialStatus.ACTIVE,
            encrypted_data=ciphertext,
            encryption_iv=nonce,
            created_by=requester.id,
            created_at=now,
        )
        self.db.add(credential)
        await self.db.flush()

        await self.db.execute(
            update(ActivationCredential)
            .where(
                ActivationCredential.request_id == request.id,
                ActivationCredential.credential_type == credential_type,
                ActivationCredential.id != credential.id,
                ActivationCredential.status.in_([CredentialStatus.PENDING, CredentialStatus.ACTIVE]),
            )
            .values(status=CredentialStatus.SUPERSEDED, superseded_by=credential.id, superseded_at=now)
            .execution_options(synchronize_session=False)
        )

        await self._recount(request)
        request.credentials_submitted_at = now
        if to_visible(request.status) in (VisibleStatus.RECEIVED, VisibleStatus.AWAITING_CREDENTIALS):
            apply_transition(request, VisibleStatus.IN_REVIEW.value, now=now)
        await self.db.commit()
        await self.db.refresh(credential)

        await audit.record(
            self.db, VAULT_FUNCTION, LogLevel.INFO,
            f"CREDENTIAL_STORED {credential_type} via {method.value}",
            details={"request_id": request.id, "credential_id": credential.id},
            owner_id=request.owner_id, aggregator=self.aggregator,
        )
        return credential

    async def list_credentials(self, request_id: str, requester: CurrentUser) -> List[ActivationCredential]:
        request = await self._owned_request(request_id, requester)
        result = await self.db.execute(
            select(ActivationCredential)
            .where(ActivationCredential.request_id == request.id)
            .order_by(ActivationCredential.created_at)
        )
        return list(result.scalars().all())

    async def reveal(self, request_id: str, requester: CurrentUser) -> RevealView:
        """Decrypt the live credentials of a request for an authorised requester.

        The first reveal of a request is stamped exactly once; the conditional
        UPDATE makes the stamp safe against concurrent first reveals.
        """
        request = await self._owned_request(request_id, requester)
        if not self.cipher.configured:
            raise CoreError(ErrorKind.ENCRYPTION_FAILURE, "Credential encryption is not configured", request_id)

        result = await self.db.execute(
            select(ActivationCredential)
            .where(
                ActivationCredential.request_id == request.id,
                ActivationCredential.status.in_([CredentialStatus.PENDING, CredentialStatus.ACTIVE]),
            )
            .order_by(ActivationCredential.created_at)
        )
        revealed = []
        for c in result.scalars().all():
            try:
                data, error = self.cipher.decrypt(c.encrypted_data, c.encryption_iv), None
            except CoreError:
                data, error = None, "Decryption failed"
            revealed.append(RevealedCredential(
                id=c.id,
                credential_type=c.credential_type,
                method=CredentialMethod(c.method).value,
                status=CredentialStatus(c.status).value,
                data=data,
                error=error,
            ))

        now = utcnow()
        stamped = await self.db.execute(
            update(ActivationRequest)
            .where(
                ActivationRequest.id == request.id,
                ActivationRequest.credentials_first_viewed_at.is_(None),
            )
            .values(credentials_first_viewed_at=now)
            .execution_options(synchronize_session=False)
        )
        first_view = stamped.rowcount == 1
        await self.db.commit()
        await self.db.refresh(request)

        await audit.record(
            self.db, VAULT_FUNCTION, LogLevel.INFO,
            f"CREDENTIAL_READ {len(revealed)} credential(s)",
            details={"request_id": request.id, "reader": requester.id, "first_view": first_view},
            owner_id=request.owner_id, aggregator=self.aggregator,
        )
        viewed_at = request.credentials_first_viewed_at
        return RevealView(
            request_id=request.id,
            first_view=first_view,
            first_viewed_at=viewed_at.isoformat() if viewed_at else None,
            credentials=revealed,
        )

    async def revoke(self, credential_id: str, requester: CurrentUser, reason: Optional[str] = None) -> ActivationCredential:
        """Destroy the ciphertext and mark the credential revoked."""
        credential = await self._credential(credential_id)
        request = await self._owned_request(credential.request_id, requester)
        if credential.status == CredentialStatus.REVOKED:
            raise CoreError(ErrorKind.INVALID_TRANSITION, "Credential is already revoked", credential_id)

        credential.status = CredentialStatus.REVOKED
        credential.encrypted_data = None
        credential.encryption_iv = None
        credential.revoked_at = utcnow()
        credential.revoked_by = requester.id
        credential.revocation_reason = reason
        await self.db.flush()
        await self._recount(request)
        await self.db.commit()
        await self.db.refresh(credential)

        await audit.record(
            self.db, VAULT_FUNCTION, LogLevel.WARN,
            f"CREDENTIAL_REVOKED {credential.credential_type}",
            details={"request_id": request.id, "credential_id": credential.id, "reason": reason},
            owner_id=request.owner_id, aggregator=self.aggregator,
        )
        return credential

    async def confirm(self, credential_id: str) -> ActivationCredential:
        """Operator confirms that a link or invite hand-off was accepted."""
        credential = await self._credential(credential_id)
        if credential.status != CredentialStatus.PENDING:
            raise CoreError(
                ErrorKind.INVALID_TRANSITION,
                f"Only pending credentials can be confirmed (is {CredentialStatus(credential.status).value})",
                credential_id,
            )
        request = await get_request(self.db, credential.request_id)
        credential.status = CredentialStatus.ACTIVE
        credential.confirmed_at = utcnow()
        await self.db.flush()
        await self._recount(request)
        await self.db.commit()
        await self.db.refresh(credential)
        return credential

    async def readiness(self, request_id: str, required_types: Iterable[str], requester: CurrentUser) -> dict:
        """Credential-complete when every required type has an active credential."""
        request = await self._owned_request(request_id, requester)
        result = await self.db.execute(
            select(ActivationCredential.credential_type).where(
                ActivationCredential.request_id == request.id,
                ActivationCredential.status == CredentialStatus.ACTIVE,
            )
        )
        active = set(result.scalars().all())
        required = list(dict.fromkeys(required_types))
        missing = [t for t in required if t not in active]
        return {
            "request_id": request.id,
            "ready": not missing,
            "required": required,
            "active": sorted(active),
            "missing": missing,
        }
