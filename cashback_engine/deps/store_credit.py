from fastapi import Depends

from cashback_engine.deps.merchant import get_active_merchant
from cashback_engine.services.store_credit_client import build_store_credit_client


def get_store_credit_client(merchant: str = Depends(get_active_merchant)):
    client = build_store_credit_client(merchant)
    try:
        yield client
    finally:
        if client is not None:
            client.close()
