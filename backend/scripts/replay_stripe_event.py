import argparse

import stripe

from courseshop.core.config import settings
from courseshop.core.logging import configure_logging
from courseshop.db.session import SessionLocal
from courseshop.services.billing import handle_event
from courseshop.services.billing_provider import decode_event, get_provider_adapter
from courseshop.services.billing_store import SqlBillingStore


def main():
    parser = argparse.ArgumentParser(description="Re-run a Stripe event through the webhook handlers.")
    parser.add_argument("event_id")
    args = parser.parse_args()

    if not settings.STRIPE_SECRET_KEY:
        raise SystemExit("STRIPE_SECRET_KEY is not set")

    configure_logging()
    event = stripe.Event.retrieve(args.event_id, api_key=settings.STRIPE_SECRET_KEY)

    db = SessionLocal()
    try:
        outcome = handle_event(
            decode_event(event.to_dict()),
            store=SqlBillingStore(db),
            provider=get_provider_adapter(),
        )
        db.commit()
        print(f"ok: {args.event_id} ({event.type}) -> {outcome}")
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    main()
