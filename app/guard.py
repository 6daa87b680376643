import logging
from typing import Literal, Union

from pydantic import BaseModel

from app.records import (
    AssumedClass,
    BookIdentity,
    ClassifiedRecord,
    GenericCode,
    ScanMode,
    StudentIdentity,
)

logger = logging.getLogger(__name__)

BOOK_FOR_STUDENT = "book code scanned, expected student"
STUDENT_FOR_BOOK = "student code scanned, expected book"


class Accepted(BaseModel):
    verdict: Literal["accept"] = "accept"
    record: ClassifiedRecord
    message: str = ""


class Rejected(BaseModel):
    verdict: Literal["reject"] = "reject"
    reason: str
    title: str = ""
    message: str = ""


GuardResult = Union[Accepted, Rejected]


def _record_class(record) -> AssumedClass:
    if isinstance(record, StudentIdentity):
        return AssumedClass.STUDENT
    if isinstance(record, BookIdentity):
        return AssumedClass.BOOK
    return record.assumed_class


def accepted_message(record) -> str:
    if isinstance(record, StudentIdentity):
        return f"Student {record.full_name or record.email} selected."
    if isinstance(record, BookIdentity):
        if record.book_id is None and record.title is None and record.isbn:
            return f"ISBN: {record.isbn}"
        return f"Book \"{record.title or record.isbn or 'Unknown'}\" selected."
    text = record.raw_text
    snippet = text[:50] + ("..." if len(text) > 50 else "")
    return f"Data: {snippet}"


def _rejection(record, expected: ScanMode) -> Rejected:
    if expected == ScanMode.STUDENT:
        if isinstance(record, BookIdentity) and record.isbn and not (record.book_id or record.title):
            title, message = "ISBN Detected", "This appears to be a book ISBN. Please scan a student ID."
        else:
            title, message = "Book Code Detected", "This appears to be a book code. Please scan a student ID."
        return Rejected(reason=BOOK_FOR_STUDENT, title=title, message=message)
    return Rejected(
        reason=STUDENT_FOR_BOOK,
        title="Student ID Detected",
        message="This appears to be a student ID. Please scan a book QR code or barcode.",
    )


def guard(record, expected_mode) -> GuardResult:
    """
    Check a classified record against the identity class the workflow expects.

    Unknown generic codes are never rejected for being unknown; they are
    re-tagged to the expected class instead.
    """
    expected = ScanMode(expected_mode)
    if expected == ScanMode.EITHER:
        return Accepted(record=record, message=accepted_message(record))

    actual = _record_class(record)
    if actual == AssumedClass.UNKNOWN:
        record = GenericCode(raw_text=record.raw_text, assumed_class=AssumedClass(expected.value))
        return Accepted(record=record, message=accepted_message(record))

    if actual.value != expected.value:
        rejected = _rejection(record, expected)
        logger.info(f"Scan rejected in {expected.value} mode: {rejected.reason}")
        return rejected
    return Accepted(record=record, message=accepted_message(record))
