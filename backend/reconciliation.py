# reconciliation.py — Completed checkout → exactly one activation request
"""
The payment webhook and the customer's post-checkout redirect race to create
the same activation request, and the redirect may land before the webhook.

reconcile() turns a paid checkout session into one open activation request:

1. verify the session with the gateway (never retried when it says no)
2. find the Purchase row, retrying with linear backoff while the webhook lands
3. return the request already fulfilling this purchase, or an open one for
   (owner, item), if there is one
4. wait one stabilization window and look again
5. insert; the partial unique index rejects a second open request
6. on a uniqueness conflict re-read and return the winner's row

No locks are taken. Every store access runs in its own session so
concurrent callers never share transaction state.
"""
import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from activation import find_open_request, find_request_for_purchase, new_request
from errors import CoreError, ErrorKind, session_reference
from models import (
    ActivationRequest, ItemType, Purchase, PurchaseStatus,
    PAID_PURCHASE_STATUSES, item_key,
)
from payment_gateway import SessionVerification, StripeGateway
from retry import RetryPolicy, linear_backoff
from telemetry import span

logger = logging.getLogger("aerelion.reconcile")

# A conflict whose winner cannot be re-read (it reached a terminal state in
# between) is retried this many times before giving up.
MAX_INSERT_ATTEMPTS = 3


@dataclass(frozen=True)
class ReconciliationSettings:
    max_retries: int = 3
    base_delay: float = 1.0
    stabilize_delay: float = 0.5
    synthesize_missing_purchase: bool = False

    @classmethod
    def from_env(cls) -> "ReconciliationSettings":
        return cls(
            max_retries=int(os.getenv("RECONCILE_MAX_RETRIES", "3")),
            base_delay=float(os.getenv("RECONCILE_BASE_DELAY_SECONDS", "1.0")),
            stabilize_delay=float(os.getenv("RECONCILE_STABILIZE_SECONDS", "0.5")),
            synthesize_missing_purchase=os.getenv("RECONCILE_SYNTHESIZE_PURCHASE", "false").lower() == "true",
        )


def get_reconciliation_settings() -> ReconciliationSettings:
    """Dependency returning reconciliation tuning (FastAPI Depends)"""
    return ReconciliationSettings.from_env()


@dataclass(frozen=True)
class PaidCheckout:
    """A paid checkout as reported by the webhook or by verification."""
    session_ref: str
    item_type: ItemType
    item_id: str
    email: str
    user_id: Optional[str] = None
    amount_cents: int = 0
    currency: str = "usd"


class ReconciliationEngine:

    def __init__(
        self,
        session_factory: async_sessionmaker,
        gateway: Optional[StripeGateway] = None,
        settings: Optional[ReconciliationSettings] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.settings = settings or ReconciliationSettings()
        self.sleep = sleep or asyncio.sleep
        self.retry = RetryPolicy(
            max_retries=self.settings.max_retries,
            delay=linear_backoff(self.settings.base_delay),
            sleep=self.sleep,
        )

    # ── Entry points ────────────────────────────────────────

    async def reconcile(self, session_ref: str, owner_id: str, owner_email: str) -> ActivationRequest:
        """Post-checkout redirect path. Returns the single open request for this purchase."""
        ref = session_reference(session_ref)
        with span("reconcile.verify_session", session=ref):
            verification = await self.gateway.verify_session(session_ref)
        self._check_payer(verification, owner_id, owner_email, ref)

        purchase = await self.retry.until_found(
            lambda: self.find_paid_purchase(session_ref), label=f"purchase {ref}",
        )
        if purchase is None:
            if not self.settings.synthesize_missing_purchase:
                logger.info(f"Purchase {ref} not recorded yet after {self.settings.max_retries} retries")
                raise CoreError(
                    ErrorKind.WEBHOOK_NOT_YET_RECEIVED,
                    "Your payment is confirmed and still being processed. Please check back in a moment.",
                    ref,
                )
            purchase = await self.record_paid_purchase(PaidCheckout(
                session_ref=session_ref,
                item_type=verification.item_type,
                item_id=verification.item_id,
                email=verification.payer_email or owner_email,
                user_id=owner_id,
                amount_cents=verification.amount_cents,
                currency=verification.currency,
            ))

        if purchase.user_id and purchase.user_id != owner_id:
            raise CoreError(ErrorKind.FORBIDDEN, "This purchase belongs to a different account", ref)

        return await self._ensure(purchase, owner_id, owner_email, stabilize=True)

    async def ensure_activation(self, purchase: Purchase, owner_id: str, owner_email: str) -> ActivationRequest:
        """Webhook path: the purchase is known, go straight to find-or-insert."""
        return await self._ensure(purchase, owner_id, owner_email, stabilize=False)

    # ── Store access ────────────────────────────────────────

    async def find_paid_purchase(self, session_ref: str) -> Optional[Purchase]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Purchase).where(
                    Purchase.stripe_session_id == session_ref,
                    Purchase.status.in_(PAID_PURCHASE_STATUSES),
                )
            )
            return result.scalar_one_or_none()

    async def find_existing(self, purchase: Purchase, owner_id: str, key: str) -> Optional[ActivationRequest]:
        """The purchase's own request (any status), else an open one for (owner, item)."""
        async with self.session_factory() as db:
            fulfilled = await find_request_for_purchase(db, purchase.id)
            if fulfilled is not None:
                return fulfilled
            return await find_open_request(db, owner_id, key)

    async def record_paid_purchase(self, checkout: PaidCheckout) -> Purchase:
        """Upsert a paid Purchase keyed by gateway session reference."""
        ref = session_reference(checkout.session_ref)
        try:
            async with self.session_factory() as db:
                result = await db.execute(
                    select(Purchase).where(Purchase.stripe_session_id == checkout.session_ref)
                )
                purchase = result.scalar_one_or_none()
                if purchase is None:
                    purchase = Purchase(
                        stripe_session_id=checkout.session_ref,
                        item_type=checkout.item_type,
                        item_id=checkout.item_id,
                        email=checkout.email.lower(),
                        user_id=checkout.user_id,
                        amount_cents=checkout.amount_cents,
                        currency=checkout.currency,
                        status=PurchaseStatus.COMPLETED,
                    )
                    db.add(purchase)
                elif purchase.status not in PAID_PURCHASE_STATUSES:
                    purchase.status = PurchaseStatus.COMPLETED
                    purchase.user_id = purchase.user_id or checkout.user_id
                await db.commit()
                await db.refresh(purchase)
                return purchase
        except IntegrityError:
            # Concurrent delivery recorded it first
            existing = await self.find_paid_purchase(checkout.session_ref)
            if existing is None:
                raise CoreError(ErrorKind.PERSISTENCE_FAILURE, "Could not record purchase", ref)
            return existing
        except SQLAlchemyError as e:
            logger.error(f"Purchase upsert failed for {ref}: {type(e).__name__}", exc_info=True)
            raise CoreError(ErrorKind.PERSISTENCE_FAILURE, "Could not record purchase. Please contact support.", ref)

    # ── Internals ───────────────────────────────────────────

    @staticmethod
    def _check_payer(verification: SessionVerification, owner_id: str, owner_email: str, ref: str) -> None:
        if verification.user_id and verification.user_id != owner_id:
            raise CoreError(ErrorKind.FORBIDDEN, "This purchase belongs to a different account", ref)
        if verification.payer_email and owner_email and verification.payer_email.lower() != owner_email.lower():
            raise CoreError(ErrorKind.FORBIDDEN, "This purchase belongs to a different account", ref)

    async def _ensure(self, purchase: Purchase, owner_id: str, owner_email: str, stabilize: bool) -> ActivationRequest:
        key = item_key(purchase.item_type, purchase.item_id)
        ref = session_reference(purchase.stripe_session_id)

        existing = await self.find_existing(purchase, owner_id, key)
        if existing:
            return existing

        if stabilize:
            await self.sleep(self.settings.stabilize_delay)
            existing = await self.find_existing(purchase, owner_id, key)
            if existing:
                return existing

        for attempt in range(1, MAX_INSERT_ATTEMPTS + 1):
            created = await self._insert(purchase, owner_id, owner_email, ref)
            if created is not None:
                logger.info(f"Activation {created.id[:8]} created for {key} (purchase {ref})")
                return created
            existing = await self.find_existing(purchase, owner_id, key)
            if existing:
                logger.info(f"Activation for {key} created concurrently, reusing {existing.id[:8]}")
                return existing
            logger.warning(f"Insert conflict for {key} without a readable winner (attempt {attempt})")

        raise CoreError(
            ErrorKind.PERSISTENCE_FAILURE,
            "We could not set up your activation. Please contact support.",
            ref,
        )

    async def _insert(self, purchase: Purchase, owner_id: str, owner_email: str, ref: str) -> Optional[ActivationRequest]:
        """Insert a new open request. None means another writer holds the slot."""
        request = new_request(
            owner_id=owner_id,
            email=owner_email or purchase.email,
            item_type=purchase.item_type,
            item_id=purchase.item_id,
            purchase_id=purchase.id,
        )
        try:
            async with self.session_factory() as db:
                db.add(request)
                await db.commit()
                await db.refresh(request)
                return request
        except IntegrityError:
            return None
        except SQLAlchemyError as e:
            logger.error(f"Activation insert failed for purchase {ref}: {type(e).__name__}", exc_info=True)
            raise CoreError(
                ErrorKind.PERSISTENCE_FAILURE,
                "We could not set up your activation. Please contact support.",
                ref,
            )
