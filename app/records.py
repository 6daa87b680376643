"""
Record shapes shared by the scanner and the bulk importer.

A ClassifiedRecord is a closed union: each variant carries only the fields
that make it valid, so a student identity without an email cannot be built.
"""
import datetime
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field


class Channel(str, Enum):
    CAMERA = "camera"
    KEYBOARD_WEDGE = "keyboard-wedge"
    MANUAL = "manual"
    FILE_DECODE = "file-decode"


class ScanMode(str, Enum):
    STUDENT = "student"
    BOOK = "book"
    EITHER = "either"


class AssumedClass(str, Enum):
    STUDENT = "student"
    BOOK = "book"
    UNKNOWN = "unknown"


class ScanPayload(BaseModel):
    text: str
    channel: Channel
    captured_at: datetime.datetime = Field(default_factory=lambda: datetime.datetime.now(datetime.timezone.utc))


class StudentIdentity(BaseModel):
    kind: Literal["student"] = "student"
    student_id: str = Field(..., min_length=1)
    student_number: str = Field(..., min_length=1)
    email: str = Field(..., min_length=1)
    full_name: Optional[str] = None
    issued_at: Optional[str] = None


class BookIdentity(BaseModel):
    kind: Literal["book"] = "book"
    book_id: Optional[str] = None
    isbn: Optional[str] = None
    title: Optional[str] = None
    raw_text: str


class GenericCode(BaseModel):
    kind: Literal["generic"] = "generic"
    raw_text: str
    assumed_class: AssumedClass = AssumedClass.UNKNOWN


ClassifiedRecord = Annotated[
    Union[StudentIdentity, BookIdentity, GenericCode],
    Field(discriminator="kind"),
]


class ImportSchema(str, Enum):
    BOOK = "book"
    STUDENT = "student"


class BookImportRow(BaseModel):
    title: str
    author: str
    isbn: str = ""
    publisher: str = ""
    category: str = ""
    publication_year: str = ""
    total_copies: str = "1"
    shelf_location: str = ""
    description: str = ""
    # 1-based row (CSV, header counted) or block number in the source document
    source_row: Optional[int] = None

    def has_required_fields(self) -> bool:
        return bool(self.title.strip() and self.author.strip())

    def dedup_key(self) -> str:
        return f"{fold(self.title)}|{fold(self.author)}"

    def existing_key(self) -> str:
        return self.isbn.replace("-", "").replace(" ", "").upper()


class StudentImportRow(BaseModel):
    full_name: str
    email: Optional[str] = None
    course_level: str = "UG"
    program: str = "BCom"
    year: int = 1
    division: str = ""
    roll_number: str = ""
    student_number: Optional[str] = None
    source_row: Optional[int] = None

    def has_required_fields(self) -> bool:
        return bool(
            self.full_name.strip()
            and self.program.strip()
            and self.division.strip()
            and self.roll_number.strip()
        )

    def dedup_key(self) -> Optional[str]:
        return fold(self.email) if self.email else None

    def existing_key(self) -> str:
        return (self.email or "").strip().lower()


ImportRow = Union[BookImportRow, StudentImportRow]


def fold(value: Optional[str]) -> str:
    """Case-insensitive, whitespace-collapsed comparison key."""
    return " ".join((value or "").split()).casefold()
