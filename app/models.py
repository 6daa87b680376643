from typing import List, Union

from pydantic import BaseModel, Field

from app.records import BookImportRow, ScanMode, StudentImportRow


class OpenSessionRequest(BaseModel):
    mode: ScanMode = ScanMode.EITHER


class KeyEventRequest(BaseModel):
    key: str = Field(..., min_length=1)
    in_text_input: bool = False


class KeyStroke(BaseModel):
    key: str = Field(..., min_length=1)
    at_ms: float


class KeyBurstRequest(BaseModel):
    keys: List[KeyStroke]
    ended_idle: bool = False
    in_text_input: bool = False


class TextScanRequest(BaseModel):
    text: str


class BookCommitRequest(BaseModel):
    rows: List[BookImportRow]


class StudentCommitRequest(BaseModel):
    rows: List[StudentImportRow]


class ImportPreview(BaseModel):
    ok: bool = True
    count: int
    rows: List[Union[BookImportRow, StudentImportRow]]
    already_exists: List[Union[BookImportRow, StudentImportRow]] = []
