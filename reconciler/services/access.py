# reconciler/services/access.py
import hashlib
import logging
import os
import secrets
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from reconciler.config import settings
from reconciler.models import CustomerAccess, CustomerCredential, MemberArea, now_utc

logger = logging.getLogger("reconciler.access")

# No 0/O, 1/l/I: the password is typed from an email
PASSWORD_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnpqrstuvwxyz23456789"
HASH_ITERATIONS = 100000


def generate_temporary_password(length: int = 10) -> str:
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


def hash_password(password: str) -> str:
    """PBKDF2-SHA256 with a random salt, stored as 'salt$hash' in hex."""
    salt = os.urandom(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt, HASH_ITERATIONS)
    return f"{salt.hex()}${digest.hex()}"


def verify_password(password: str, stored_hash: str) -> bool:
    try:
        salt_hex, hash_hex = stored_hash.split("$", 1)
        salt = bytes.fromhex(salt_hex)
        expected = bytes.fromhex(hash_hex)
    except (ValueError, AttributeError):
        return False
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt, HASH_ITERATIONS)
    return secrets.compare_digest(digest, expected)


def normalize_email(email: str) -> str:
    return email.strip().lower()


def member_area_url(area: MemberArea) -> str:
    return area.url or f"{settings.member_area_base_url.rstrip('/')}/{area.id}"


def grant_access(db: Session, customer_email: str, customer_name: Optional[str],
                 product_id: str, order_id: str) -> CustomerAccess:
    """
    Upsert the (customer, product) access row. A repeat purchase reactivates
    the row and points it at the newest order.
    """
    email = normalize_email(customer_email)
    row = db.execute(
        select(CustomerAccess)
        .where(CustomerAccess.customer_email == email, CustomerAccess.product_id == product_id)
        .with_for_update()
    ).scalar_one_or_none()
    if row is None:
        row = CustomerAccess(customer_email=email, product_id=product_id)
        db.add(row)
    row.customer_name = customer_name
    row.order_id = order_id
    row.is_active = True
    row.access_granted_at = now_utc()
    db.commit()
    logger.info("Access granted", extra={"customer_email": email, "product_id": product_id, "order_id": order_id})
    return row


def issue_credential(db: Session, customer_email: str) -> Optional[str]:
    """
    Temporary password for a first-time customer, stored hashed.
    None when the customer already has a credential.
    """
    email = normalize_email(customer_email)
    if db.get(CustomerCredential, email) is not None:
        return None
    password = generate_temporary_password()
    db.add(CustomerCredential(customer_email=email, password_hash=hash_password(password)))
    db.commit()
    return password
