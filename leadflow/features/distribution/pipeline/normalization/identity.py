"""
Identity normalization - maps channel field names onto {name, email, phone}.

Key matching is case-sensitive. Synonyms are tried in the listed order and
the first non-empty value wins; any other synonym that was present is kept
in custom_fields so nothing submitted by the channel is lost.
"""

from typing import Any

from leadflow.features.distribution.domain.models import NormalizedIdentity

NAME_KEYS = (
    "name",
    "fullName",
    "full_name",
    "customer_name",
    "user_name",
    "username",
    "your_name",
    "contact_name",
)
EMAIL_KEYS = (
    "email",
    "emailAddress",
    "email_address",
    "user_email",
    "customer_email",
    "mail",
)
PHONE_KEYS = (
    "phone",
    "phoneNumber",
    "phone_number",
    "mobile",
    "mobileNumber",
    "mobile_number",
    "tel",
    "telephone",
    "contactNumber",
    "contact_number",
)

FIRST_NAME_KEYS = ("firstName", "first_name")
LAST_NAME_KEYS = ("lastName", "last_name")

CANONICAL_FIELDS = {"name": NAME_KEYS, "email": EMAIL_KEYS, "phone": PHONE_KEYS}


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    return False


def _clean(value: Any) -> str:
    return value.strip() if isinstance(value, str) else str(value)


def _first_present(raw_fields: dict[str, Any], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = raw_fields.get(key)
        if not _is_empty(value):
            return _clean(value)
    return None


def normalize(raw_fields: dict[str, Any] | None) -> NormalizedIdentity:
    """
    Normalize a raw channel field bag.

    Never raises: an identity with no name, email or phone is a valid result
    and the caller decides whether to reject it.
    """
    if not raw_fields:
        return NormalizedIdentity()

    chosen: dict[str, str | None] = {}
    chosen_keys: set[str] = set()
    for canonical, keys in CANONICAL_FIELDS.items():
        chosen[canonical] = None
        for key in keys:
            value = raw_fields.get(key)
            if not _is_empty(value):
                chosen[canonical] = _clean(value)
                chosen_keys.add(key)
                break

    custom_fields: dict[str, Any] = {}
    for key, value in raw_fields.items():
        if _is_empty(value) or key in chosen_keys:
            continue
        custom_fields[key] = value

    if not chosen["name"]:
        first = _first_present(raw_fields, FIRST_NAME_KEYS)
        last = _first_present(raw_fields, LAST_NAME_KEYS)
        combined = " ".join(part for part in (first, last) if part)
        chosen["name"] = combined or None

    return NormalizedIdentity(
        name=chosen["name"],
        email=chosen["email"],
        phone=chosen["phone"],
        custom_fields=custom_fields,
    )
