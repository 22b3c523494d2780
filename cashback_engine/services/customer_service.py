import logging
from datetime import datetime

from sqlalchemy.orm import Session

from cashback_engine.errors import NotFoundError, ValidationError
from cashback_engine.models.customer import Customer
from cashback_engine.services.atomic import run_atomic
from cashback_engine.services.membership_service import assign_initial


logger = logging.getLogger(__name__)


def get_customer(db: Session, merchant_id: str, customer_id) -> Customer:
    customer = db.query(Customer).filter(Customer.id == customer_id).first()
    if not customer or customer.merchant_id != merchant_id:
        raise NotFoundError("Customer not found")
    return customer


def find_customer_by_external_id(db: Session, merchant_id: str, external_customer_id: str) -> Customer | None:
    return (
        db.query(Customer)
        .filter(
            Customer.merchant_id == merchant_id,
            Customer.external_customer_id == external_customer_id,
        )
        .first()
    )


def get_or_create_customer(
    db: Session,
    merchant_id: str,
    external_customer_id: str,
    *,
    email: str | None = None,
    currency: str | None = None,
    now: datetime | None = None,
) -> Customer:
    """Find the customer, creating it and assigning its initial tier if new."""
    if not external_customer_id or not str(external_customer_id).strip():
        raise ValidationError("external customer id is required")
    external_customer_id = str(external_customer_id).strip()

    def unit():
        customer = find_customer_by_external_id(db, merchant_id, external_customer_id)
        if customer:
            if email and customer.email != email:
                customer.email = email
            return customer, False

        customer = Customer(
            merchant_id=merchant_id,
            external_customer_id=external_customer_id,
            email=email,
            currency=(currency or "USD").upper(),
            store_credit_balance=0,
            total_earned=0,
        )
        db.add(customer)
        db.flush()
        return customer, True

    customer, created = run_atomic(db, unit, label="get_or_create_customer")

    if created:
        logger.info(
            "customer created",
            extra={"merchant_id": merchant_id, "customer_id": str(customer.id), "external_customer_id": external_customer_id},
        )
        try:
            assign_initial(db, customer.id, now=now)
        except ValidationError as e:
            # merchant has no tiers yet; the first evaluation will assign one
            logger.info("initial tier not assigned", extra={"customer_id": str(customer.id), "reason": e.message})

    return customer
