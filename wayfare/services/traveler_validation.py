"""Traveler and contact checks run before a session may be paid for.

Errors are collected, not raised one at a time, so the client can fix every
field in one round trip.
"""
import re
from datetime import date

from wayfare.core import clock
from wayfare.core.errors import FieldError
from wayfare.schemas.checkout import ContactIn, TravelerIn

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^\+?[0-9 ()\-]{6,20}$")

ADULT_AGE = 18
CHILD_MIN_AGE = 2


def travelers_required(entry: dict) -> int:
    """Travelers one snapshot entry needs: a seat or room occupant each, one driver for a car."""
    if entry.get("item_type") == "car":
        return 1
    return int(entry.get("quantity") or 1) * int(entry.get("occupants") or 1)


def required_traveler_count(entries: list[dict]) -> int:
    return max((travelers_required(e) for e in entries), default=0)


def age_on(born: date, on: date) -> int:
    years = on.year - born.year
    if (on.month, on.day) < (born.month, born.day):
        years -= 1
    return years


def _departure_dates(entries: list[dict]) -> list[date]:
    dates = []
    for e in entries:
        dep = clock.parse_iso((e.get("schedule") or {}).get("departure_at"))
        if dep is not None:
            dates.append(dep.date())
    return dates


def validate_travelers(entries: list[dict], travelers: list[TravelerIn], contact: ContactIn, today: date | None = None) -> list[FieldError]:
    today = today or clock.now().date()
    errors: list[FieldError] = []

    required = required_traveler_count(entries)
    if len(travelers) < required:
        errors.append(FieldError("travelers", f"{required} traveler(s) required, got {len(travelers)}", "count"))
    if travelers and not any(t.type == "adult" for t in travelers):
        errors.append(FieldError("travelers", "At least one adult traveler is required", "adult_required"))

    for i, t in enumerate(travelers):
        prefix = f"travelers[{i}]"
        if not t.firstName.strip():
            errors.append(FieldError(f"{prefix}.firstName", "First name is required", "required"))
        if not t.lastName.strip():
            errors.append(FieldError(f"{prefix}.lastName", "Last name is required", "required"))
        if t.dateOfBirth is None:
            errors.append(FieldError(f"{prefix}.dateOfBirth", "Date of birth is required", "required"))
            continue
        if t.dateOfBirth > today:
            errors.append(FieldError(f"{prefix}.dateOfBirth", "Date of birth is in the future"))
            continue
        age = age_on(t.dateOfBirth, today)
        if t.type == "adult" and age < ADULT_AGE:
            errors.append(FieldError(f"{prefix}.type", "Adult must be 18 or older", "age_mismatch"))
        elif t.type == "child" and not (CHILD_MIN_AGE <= age < ADULT_AGE):
            errors.append(FieldError(f"{prefix}.type", "Child must be between 2 and 17 years old", "age_mismatch"))
        elif t.type == "infant" and age >= CHILD_MIN_AGE:
            errors.append(FieldError(f"{prefix}.type", "Infant must be under 2 years old", "age_mismatch"))

    doc_entries = [e for e in entries if e.get("requires_document")]
    if doc_entries:
        departures = _departure_dates(doc_entries)
        last_departure = max(departures) if departures else today
        needing = max(travelers_required(e) for e in doc_entries)
        for i, t in enumerate(travelers[:needing]):
            prefix = f"travelers[{i}].document"
            doc = t.document
            if doc is None:
                errors.append(FieldError(prefix, "Travel document is required", "required"))
                continue
            if not doc.number.strip():
                errors.append(FieldError(f"{prefix}.number", "Document number is required", "required"))
            if not doc.issuingCountry.strip():
                errors.append(FieldError(f"{prefix}.issuingCountry", "Issuing country is required", "required"))
            if doc.expiryDate is None:
                errors.append(FieldError(f"{prefix}.expiryDate", "Document expiry date is required", "required"))
            elif doc.expiryDate <= last_departure:
                errors.append(FieldError(f"{prefix}.expiryDate", "Document expires before departure", "expired"))

    if any(e.get("item_type") == "car" for e in entries) and travelers:
        driver = travelers[0]
        if driver.type != "adult":
            errors.append(FieldError("travelers[0].type", "The driver for a car rental must be an adult", "driver_required"))

    if not contact.email.strip():
        errors.append(FieldError("contact.email", "Email is required", "required"))
    elif not EMAIL_RE.match(contact.email.strip()):
        errors.append(FieldError("contact.email", "Invalid email format"))
    if not contact.phone.strip():
        errors.append(FieldError("contact.phone", "Phone number is required", "required"))
    elif not PHONE_RE.match(contact.phone.strip()):
        errors.append(FieldError("contact.phone", "Invalid phone number"))

    return errors


def assign_travelers(entry: dict, traveler_count: int) -> list[int]:
    return list(range(min(travelers_required(entry), traveler_count)))
