from fastapi import Depends
from sqlalchemy.orm import Session

from courseshop.db.session import get_db
from courseshop.services.billing_provider import BillingProviderAdapter, get_provider_adapter
from courseshop.services.billing_store import BillingStore, SqlBillingStore


def get_billing_store(db: Session = Depends(get_db)) -> BillingStore:
    return SqlBillingStore(db)


def get_billing_provider() -> BillingProviderAdapter:
    return get_provider_adapter()
