"""
FastAPI dependencies for authentication.

Every protected endpoint depends on get_current_identity, which turns the
"Authorization: Bearer <token>" header into the caller's identity address.
What that identity may do is decided by the services (voucher ownership,
organization permissions), never here.
"""

from datetime import date

from fastapi import Depends, HTTPException, Query, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError

from app.models.voucher_transaction import TransactionState
from app.schemas.transaction import TransactionFilter
from app.security import decode_access_token


bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_identity(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> str:
    """
    Validate the bearer JWT and return its "sub" claim.

    Raises:
        HTTPException 401: If the token is missing, invalid, expired or has no subject.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if credentials is None:
        raise credentials_exception

    try:
        payload = decode_access_token(credentials.credentials)
    except JWTError:
        raise credentials_exception

    identity_address = payload.get("sub")
    if not isinstance(identity_address, str) or not identity_address:
        raise credentials_exception
    return identity_address


async def get_transaction_filter(
    q: str | None = Query(None, description="Provider name, fund name or transaction id"),
    state: TransactionState | None = Query(None),
    from_date: date | None = Query(None, description="Inclusive, YYYY-MM-DD"),
    to_date: date | None = Query(None, description="Inclusive, YYYY-MM-DD"),
    amount_min: int | None = Query(None, ge=0, description="Inclusive, in cents"),
    amount_max: int | None = Query(None, ge=0, description="Inclusive, in cents"),
) -> TransactionFilter:
    """Collect the ledger filter query parameters shared by every transaction listing."""
    return TransactionFilter(
        q=q,
        state=state,
        from_date=from_date,
        to_date=to_date,
        amount_min=amount_min,
        amount_max=amount_max,
    )
