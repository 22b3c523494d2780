from fastapi import Header, HTTPException, Query


def get_active_merchant(
    merchant_query: str | None = Query(default=None, alias="merchant"),
    x_merchant: str | None = Header(default=None, alias="X-Merchant"),
) -> str:
    active = x_merchant or merchant_query
    if not active:
        raise HTTPException(
            status_code=400,
            detail="Missing merchant context. Provide X-Merchant header or merchant query param.",
        )
    return active
