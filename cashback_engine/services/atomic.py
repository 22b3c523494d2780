import logging
from typing import Callable, TypeVar

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from cashback_engine.config import ATOMIC_RETRY_ATTEMPTS
from cashback_engine.errors import ConcurrencyConflict, NotFoundError
from cashback_engine.models.customer import Customer


logger = logging.getLogger(__name__)

T = TypeVar("T")


def run_atomic(db: Session, unit: Callable[[], T], *, attempts: int | None = None, label: str = "atomic unit") -> T:
    """Run ``unit`` as one storage transaction.

    Commits on success and rolls back on any error. Unique-index and
    serialization failures mean another writer got there first: the whole
    unit is retried, since it re-reads everything it depends on.
    """
    attempts = max(1, attempts or ATOMIC_RETRY_ATTEMPTS)

    for attempt in range(1, attempts + 1):
        try:
            result = unit()
            db.commit()
            return result
        except (IntegrityError, OperationalError) as e:
            db.rollback()
            logger.warning(
                "atomic unit conflicted; retrying",
                extra={"label": label, "attempt": attempt, "attempts": attempts, "error": str(e.orig)},
            )
            if attempt == attempts:
                raise ConcurrencyConflict(f"{label} conflicted with a concurrent writer") from e
        except Exception:
            db.rollback()
            raise

    raise ConcurrencyConflict(f"{label} conflicted with a concurrent writer")


def lock_customer(db: Session, customer_id) -> Customer:
    """Row-lock the customer; serializes all writes for that customer."""
    customer = db.query(Customer).filter(Customer.id == customer_id).with_for_update().first()
    if not customer:
        raise NotFoundError("Customer not found")
    return customer
