import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import PlainTextResponse, Response
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from courseshop.api.deps import get_billing_provider, get_billing_store
from courseshop.core.config import settings
from courseshop.core.errors import ProviderError, ReferentialError
from courseshop.db.session import get_db
from courseshop.schemas.billing import CheckoutCreateIn, CheckoutCreateOut
from courseshop.services.billing import WebhookResult, process_webhook
from courseshop.services.billing_provider import BillingProviderAdapter
from courseshop.services.billing_store import BillingStore
from courseshop.services.checkout import AlreadyEnrolledError, create_course_checkout

logger = logging.getLogger(__name__)

router = APIRouter()


def _process_and_finish(db: Session, raw: bytes, signature: str | None, store: BillingStore, provider) -> WebhookResult:
    result = process_webhook(raw, signature, settings.STRIPE_WEBHOOK_SECRET, store=store, provider=provider)
    if result.status_code != 200:
        db.rollback()
        return result
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error(
            "Commit failed for webhook %s (%s): %s",
            result.event_id,
            result.event_type,
            exc,
            extra={"event_id": result.event_id, "event_type": result.event_type, "error": "PersistenceError"},
        )
        return WebhookResult(500, "error", result.event_id, result.event_type, detail="Error processing webhook")
    return result


@router.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    store: BillingStore = Depends(get_billing_store),
    provider: BillingProviderAdapter = Depends(get_billing_provider),
):
    # The signature covers the exact bytes sent, so the body is read raw.
    raw = await request.body()
    signature = request.headers.get("stripe-signature")
    result = await run_in_threadpool(_process_and_finish, db, raw, signature, store, provider)
    if result.status_code == 200:
        return Response(status_code=200)
    return PlainTextResponse(result.detail or "", status_code=result.status_code)


@router.post("/checkout/sessions", response_model=CheckoutCreateOut)
def create_checkout_session(
    payload: CheckoutCreateIn,
    db: Session = Depends(get_db),
    provider: BillingProviderAdapter = Depends(get_billing_provider),
):
    try:
        out = create_course_checkout(db, user_id=payload.user_id, course_id=payload.course_id, provider=provider)
    except ReferentialError as exc:
        raise HTTPException(404, str(exc))
    except AlreadyEnrolledError as exc:
        raise HTTPException(409, str(exc))
    except NotImplementedError as exc:
        raise HTTPException(503, str(exc))
    except ProviderError as exc:
        db.rollback()
        raise HTTPException(502, str(exc))
    db.commit()
    return CheckoutCreateOut(**out)
