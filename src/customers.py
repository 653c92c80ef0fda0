"""Customer directory: validation, normalisation and registration.

Customers are identified at the till by an external identification
string (national ID, passport number...).  It is unique: registering an
identification that belongs to somebody else raises
:class:`errors.DuplicateError`.
"""

from __future__ import annotations

import logging
import re
import sqlite3
from dataclasses import replace
from typing import List, Optional

from dao import Customer, CustomerDAO
from errors import CustomerNotFoundError, DuplicateError, ValidationError

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", re.IGNORECASE)


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def validate_customer(customer: Customer) -> List[str]:
    """Return a list of problems with ``customer``; empty when valid."""
    errors: List[str] = []
    external_id = (customer.external_id or "").strip()
    if not external_id:
        errors.append("Identification is required")
    elif len(external_id) < 3:
        errors.append("Identification must be at least 3 characters")
    elif len(external_id) > 50:
        errors.append("Identification cannot be longer than 50 characters")

    name = (customer.name or "").strip()
    if not name:
        errors.append("Full name is required")
    elif len(name) < 2:
        errors.append("Full name must be at least 2 characters")
    elif len(name) > 255:
        errors.append("Full name cannot be longer than 255 characters")

    email = _clean(customer.email)
    if email is not None:
        if len(email) > 255:
            errors.append("Email cannot be longer than 255 characters")
        elif not _EMAIL_RE.match(email):
            errors.append("Email format is not valid")

    phone = _clean(customer.phone)
    if phone is not None and len(phone) > 20:
        errors.append("Phone cannot be longer than 20 characters")
    return errors


def normalize_customer(customer: Customer) -> Customer:
    """Trim every field, lower-case the email and turn blanks into None."""
    email = _clean(customer.email)
    return replace(
        customer,
        external_id=customer.external_id.strip(),
        name=customer.name.strip(),
        email=email.lower() if email else None,
        phone=_clean(customer.phone),
        address=_clean(customer.address),
    )


class CustomerDirectory:
    """Lookup, creation and update of customers on top of :class:`CustomerDAO`."""

    def __init__(self, customer_dao: CustomerDAO) -> None:
        self.customer_dao = customer_dao

    def get(self, customer_id: int) -> Optional[Customer]:
        return self.customer_dao.get_customer(customer_id)

    def find_by_external_id(self, external_id: str | None) -> Optional[Customer]:
        external_id = (external_id or "").strip()
        if not external_id:
            logger.warning("Customer lookup with an empty identification")
            return None
        return self.customer_dao.find_by_external_id(external_id)

    def search_by_name(self, term: str | None) -> List[Customer]:
        term = (term or "").strip()
        if not term:
            return []
        return self.customer_dao.search_by_name(term)

    def create(self, customer: Customer) -> Customer:
        """Validate and insert a new customer.

        Raises:
            ValidationError: If any field is invalid.
            DuplicateError: If the identification is already registered.
        """
        errors = validate_customer(customer)
        if errors:
            raise ValidationError(errors)
        customer = normalize_customer(customer)
        try:
            with self.customer_dao.transaction():
                if self.customer_dao.find_by_external_id(customer.external_id) is not None:
                    raise DuplicateError(customer.external_id)
                customer_id = self.customer_dao.insert_customer(customer)
        except sqlite3.IntegrityError as exc:
            raise DuplicateError(customer.external_id) from exc
        created = self.customer_dao.get_customer(customer_id)
        logger.info(
            "Customer created",
            extra={"customer_id": customer_id, "extra": {"external_id": customer.external_id}},
        )
        return created

    def update(self, customer: Customer) -> Customer:
        """Validate and save changes to an existing customer.

        Raises:
            ValidationError: If any field is invalid.
            CustomerNotFoundError: If ``customer.id`` does not exist.
            DuplicateError: If the new identification belongs to another customer.
        """
        errors = validate_customer(customer)
        if errors:
            raise ValidationError(errors)
        customer = normalize_customer(customer)
        try:
            with self.customer_dao.transaction():
                owner = self.customer_dao.find_by_external_id(customer.external_id)
                if owner is not None and owner.id != customer.id:
                    raise DuplicateError(customer.external_id)
                if not self.customer_dao.update_customer(customer):
                    raise CustomerNotFoundError(customer.id)
        except sqlite3.IntegrityError as exc:
            raise DuplicateError(customer.external_id) from exc
        logger.debug("Customer updated", extra={"customer_id": customer.id})
        return self.customer_dao.get_customer(customer.id)

    def register(
        self,
        external_id: str,
        name: str,
        email: str | None = None,
        phone: str | None = None,
        address: str | None = None,
    ) -> Customer:
        """Create the customer on first visit, refresh their details afterwards."""
        existing = self.find_by_external_id(external_id)
        if existing is None:
            return self.create(
                Customer(id=None, external_id=external_id, name=name, email=email, phone=phone, address=address)
            )
        return self.update(replace(existing, name=name, email=email, phone=phone, address=address))
