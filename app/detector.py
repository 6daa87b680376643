import json
import logging
import re
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel

from app.records import (
    AssumedClass,
    BookIdentity,
    GenericCode,
    StudentIdentity,
)
from app.settings import settings

logger = logging.getLogger(__name__)

STUDENT_KEYS = ("student_id", "student_number", "email")
STUDENT_OPTIONAL_KEYS = ("full_name", "issued_at")
BOOK_KEYS = ("book_id", "isbn", "title")

ISBN13_SHAPE = re.compile(r"^97[89]\d{9}[\dX]$")
ISBN10_SHAPE = re.compile(r"^\d{9}[\dX]$")
_SEPARATORS = re.compile(r"[-\s]")


class Detection(BaseModel):
    kind: Literal["student", "book", "opaque"]
    data: Dict[str, str] = {}


def _present(obj: Dict[str, Any], key: str) -> bool:
    value = obj.get(key)
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return True


def detect(payload: str) -> Detection:
    """
    Decide whether a decoded payload is a structured student or book code.

    Anything that is not a JSON object, or is one with an unrecognised shape,
    comes back as opaque so the identifier classifier can still look at it.
    """
    try:
        obj = json.loads(payload)
    except (ValueError, TypeError):
        return Detection(kind="opaque")
    if not isinstance(obj, dict):
        return Detection(kind="opaque")

    if all(_present(obj, k) for k in STUDENT_KEYS):
        data = {k: str(obj[k]).strip() for k in STUDENT_KEYS}
        for k in STUDENT_OPTIONAL_KEYS:
            if _present(obj, k):
                data[k] = str(obj[k]).strip()
        return Detection(kind="student", data=data)

    if any(_present(obj, k) for k in BOOK_KEYS):
        return Detection(kind="book", data={k: str(obj[k]).strip() for k in BOOK_KEYS if _present(obj, k)})

    logger.debug(f"Structured payload with unrecognised keys: {sorted(obj)[:10]}")
    return Detection(kind="opaque")


def normalize_isbn(text: str) -> str:
    return _SEPARATORS.sub("", text or "").upper()


def isbn10_checksum_ok(isbn: str) -> bool:
    total = 0
    for i, ch in enumerate(isbn):
        if ch == "X":
            if i != 9:
                return False
            digit = 10
        else:
            digit = int(ch)
        total += (10 - i) * digit
    return total % 11 == 0


def isbn13_checksum_ok(isbn: str) -> bool:
    if not isbn.isdigit():
        return False
    total = sum(int(ch) * (1 if i % 2 == 0 else 3) for i, ch in enumerate(isbn[:12]))
    return (10 - total % 10) % 10 == int(isbn[12])


def looks_like_isbn(text: str, strict: Optional[bool] = None) -> bool:
    """
    ISBN-10 or ISBN-13 (978/979) shape after stripping hyphens and spaces.

    With strict checking the check digit must also add up; without it any
    correctly shaped string passes.
    """
    if strict is None:
        strict = settings.isbn_strict_checksum
    clean = normalize_isbn(text)
    if ISBN13_SHAPE.match(clean):
        return isbn13_checksum_ok(clean) if strict else True
    if ISBN10_SHAPE.match(clean):
        return isbn10_checksum_ok(clean) if strict else True
    return False


def classify(text: str, strict: Optional[bool] = None) -> Union[BookIdentity, GenericCode]:
    """Classify an opaque payload of at least eight characters."""
    if looks_like_isbn(text, strict=strict):
        return BookIdentity(isbn=normalize_isbn(text), raw_text=text)
    return GenericCode(raw_text=text, assumed_class=AssumedClass.UNKNOWN)


def classify_payload(text: str) -> Union[StudentIdentity, BookIdentity, GenericCode]:
    """Run a raw payload through format detection and identifier classification."""
    detection = detect(text)
    if detection.kind == "student":
        return StudentIdentity(**detection.data)
    if detection.kind == "book":
        return BookIdentity(raw_text=text, **detection.data)
    if len(text) < settings.opaque_min_length:
        return GenericCode(raw_text=text, assumed_class=AssumedClass.UNKNOWN)
    return classify(text)
