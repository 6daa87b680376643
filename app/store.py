import datetime
import logging
import sqlite3
from typing import Iterable, List, Set

from pydantic import BaseModel

from app.bulk_import import screen_existing, validate_book_row, validate_student_row
from app.records import BookImportRow, ImportSchema, StudentImportRow
from app.settings import settings

logger = logging.getLogger(__name__)


class ImportResult(BaseModel):
    success: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[str] = []
    skipped_items: List[str] = []


def db():
    conn = sqlite3.connect(settings.db_path)
    conn.row_factory = sqlite3.Row
    return conn


def init_db():
    with db() as c:
        c.execute("""
        CREATE TABLE IF NOT EXISTS books (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            title TEXT NOT NULL,
            author TEXT NOT NULL,
            isbn TEXT UNIQUE,
            publisher TEXT,
            category TEXT,
            publication_year INTEGER,
            total_copies INTEGER NOT NULL DEFAULT 1,
            available_copies INTEGER NOT NULL DEFAULT 1,
            location_shelf TEXT,
            description TEXT,
            created_at TEXT NOT NULL
        )
        """)
        c.execute("""
        CREATE TABLE IF NOT EXISTS students (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            full_name TEXT NOT NULL,
            email TEXT UNIQUE,
            course_level TEXT NOT NULL DEFAULT 'UG', -- UG/PG
            program TEXT NOT NULL,
            year INTEGER NOT NULL DEFAULT 1,
            division TEXT NOT NULL,
            roll_number TEXT NOT NULL,
            student_number TEXT,
            created_at TEXT NOT NULL
        )
        """)
    logger.info(f"Database ready at {settings.db_path}")


def _find_existing(sql_column: str, table: str, keys: Iterable[str]) -> Set[str]:
    keys = [k for k in keys if k]
    if not keys:
        return set()
    found: Set[str] = set()
    with db() as c:
        # stay under sqlite's bound-parameter limit
        for i in range(0, len(keys), 500):
            chunk = keys[i:i + 500]
            marks = ",".join("?" for _ in chunk)
            rows = c.execute(
                f"SELECT {sql_column} AS k FROM {table} WHERE {sql_column} IN ({marks})", chunk
            ).fetchall()
            found.update(r["k"] for r in rows)
    return found


def find_existing_isbns(keys: Iterable[str]) -> Set[str]:
    return _find_existing("isbn", "books", keys)


def find_existing_emails(keys: Iterable[str]) -> Set[str]:
    return _find_existing("lower(email)", "students", [k.lower() for k in keys])


def lookup_for(schema: ImportSchema):
    return find_existing_isbns if ImportSchema(schema) == ImportSchema.BOOK else find_existing_emails


def _insert_book(c, book: BookImportRow, now: str):
    copies = int(book.total_copies or 1)
    c.execute(
        "INSERT INTO books(title, author, isbn, publisher, category, publication_year, total_copies, "
        "available_copies, location_shelf, description, created_at) VALUES(?,?,?,?,?,?,?,?,?,?,?)",
        (
            book.title.strip(),
            book.author.strip(),
            book.existing_key() or None,
            book.publisher.strip() or None,
            book.category.strip() or None,
            int(book.publication_year) if book.publication_year else None,
            copies,
            copies,
            book.shelf_location.strip() or None,
            book.description.strip() or None,
            now,
        ),
    )


def _insert_student(c, student: StudentImportRow, now: str):
    c.execute(
        "INSERT INTO students(full_name, email, course_level, program, year, division, roll_number, "
        "student_number, created_at) VALUES(?,?,?,?,?,?,?,?,?)",
        (
            student.full_name.strip(),
            student.existing_key() or None,
            student.course_level,
            student.program,
            student.year,
            student.division.strip(),
            student.roll_number.strip(),
            student.student_number,
            now,
        ),
    )


def commit_import(rows, schema: ImportSchema) -> ImportResult:
    """
    Bulk-insert workflow: validate each row, skip rows whose ISBN / e-mail is
    already stored, insert the rest. Skips are counted apart from failures.
    """
    schema = ImportSchema(schema)
    if schema == ImportSchema.BOOK:
        validate, insert, label = validate_book_row, _insert_book, "Book with ISBN"
    else:
        validate, insert, label = validate_student_row, _insert_student, "Student with email"

    result = ImportResult()
    fresh, existing = screen_existing(rows, lookup_for(schema))
    for row in existing:
        result.skipped += 1
        result.skipped_items.append(f"Row {row.source_row}: {label} {row.existing_key()} already exists")

    now = datetime.datetime.utcnow().isoformat()
    with db() as c:
        for row in fresh:
            problems = validate(row)
            if problems:
                result.failed += 1
                result.errors.append(f"Row {row.source_row}: {', '.join(problems)}")
                continue
            try:
                insert(c, row, now)
                result.success += 1
            except sqlite3.IntegrityError:
                # same key twice in one upload, or raced with another import
                result.skipped += 1
                result.skipped_items.append(f"Row {row.source_row}: {label} {row.existing_key()} already exists")
            except sqlite3.Error as e:
                logger.error(f"Insert failed for row {row.source_row}: {e}", exc_info=True)
                result.failed += 1
                result.errors.append(f"Row {row.source_row}: {e}")
    logger.info(
        f"{schema.value} import: {result.success} added, {result.failed} failed, {result.skipped} already existed"
    )
    return result
