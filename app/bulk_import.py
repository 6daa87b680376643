"""
Bulk document extraction for book and student imports.

CSV files are mapped column by column through header alias tables. PDFs have
no columns, so book PDFs are cut into blocks and run through an ordered list
of extraction rules, while student PDFs are mined for e-mail addresses.
Nothing here writes anywhere: rows are handed back to the caller, which may
screen them against the store with screen_existing().
"""
import csv
import io
import logging
import re
from typing import Callable, Dict, Iterable, List, NamedTuple, Optional, Sequence, Set, Tuple, Union

from app.detector import looks_like_isbn, normalize_isbn
from app.pdf_text import TextFragment, fragments_to_lines, page_fragments
from app.records import BookImportRow, ImportSchema, StudentImportRow
from app.settings import settings

logger = logging.getLogger(__name__)

PROGRAMS = ("BCom", "MCom", "BBA", "BCA", "BA", "BEd", "DEd", "BSc", "MSc")
COURSE_LEVELS = ("UG", "PG")

# first alias found in the header wins
BOOK_CSV_ALIASES: Dict[str, Tuple[str, ...]] = {
    "title": ("title", "book_title"),
    "author": ("author", "authors", "author1"),
    "isbn": ("isbn",),
    "publisher": ("publisher",),
    "category": ("category",),
    "publication_year": ("publication_year", "year", "published_year"),
    "total_copies": ("total_copies", "copies", "stock"),
    "shelf_location": ("location_shelf", "shelf", "location"),
    "description": ("description", "summary"),
}

STUDENT_CSV_ALIASES: Dict[str, Tuple[str, ...]] = {
    "full_name": ("full_name", "name", "student_name"),
    "email": ("email", "email_address", "e_mail", "mail"),
    "course_level": ("course_level", "level"),
    "program": ("program", "programme", "course"),
    "year": ("year", "class_year", "study_year"),
    "division": ("division", "div", "section"),
    "roll_number": ("roll_number", "roll_no", "roll", "rollno"),
    "student_number": ("student_number", "student_no", "enrollment_number", "enrolment_number"),
}

# labels seen on printed book lists: English, Marathi, Hindi
BOOK_PDF_LABELS: Dict[str, Tuple[str, ...]] = {
    "title": (
        "title", "book title", "book name", "name of book", "name of the book",
        "शीर्षक", "पुस्तकाचे नाव", "पुस्तकाचे शीर्षक", "पुस्तक का नाम", "पुस्तक",
    ),
    "author": (
        "author", "authors", "writer", "written by",
        "लेखक", "लेखिका", "लेखकाचे नाव", "लेखक का नाम",
    ),
    "publisher": ("publisher", "published by", "publication", "प्रकाशक", "प्रकाशन"),
    "category": ("category", "genre", "subject", "विषय", "प्रकार", "श्रेणी", "वर्ग"),
    "shelf_location": (
        "shelf", "shelf location", "location", "rack", "rack no", "location shelf",
        "कपाट", "शेल्फ", "स्थान", "रॅक",
    ),
    "total_copies": (
        "copies", "total copies", "no of copies", "no. of copies", "quantity", "qty", "stock",
        "प्रती", "प्रत", "एकूण प्रती", "प्रतियां", "प्रतियाँ", "संख्या",
    ),
    "isbn": ("isbn", "isbn no", "isbn number", "आयएसबीएन"),
    "publication_year": (
        "year", "publication year", "published year", "published", "edition year",
        "वर्ष", "प्रकाशन वर्ष", "साल",
    ),
    "description": ("description", "summary", "about", "वर्णन", "सारांश", "विवरण"),
}

DEVANAGARI_DIGITS = str.maketrans("०१२३४५६७८९", "0123456789")

_LABEL_TO_FIELD = {label.casefold(): field for field, labels in BOOK_PDF_LABELS.items() for label in labels}
LABELED_PAIR = re.compile(
    r"^\s*(?P<label>"
    + "|".join(re.escape(label) for label in sorted(_LABEL_TO_FIELD, key=len, reverse=True))
    + r")\s*[:：=\-–—]\s*(?P<value>.*\S)?\s*$",
    re.IGNORECASE,
)
PAIR_SEPARATOR = re.compile(r"\s+[|;]\s+|\s*\t\s*")
ISBN_TOKEN = re.compile(r"(?<![\dX])(?:97[89][-\s]?)?(?:\d[-\s]?){9}[\dXx](?![\dX])")
YEAR_TOKEN = re.compile(r"(?<!\d)(1[5-9]\d{2}|20\d{2})(?!\d)")
BY_SPLIT = re.compile(r"^(?P<title>.+?)\s+(?:by|द्वारा|लेखक)\s+(?P<author>.+)$", re.IGNORECASE)
EMAIL = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
NAME_LABEL = re.compile(r"^\s*(?:full name|student name|name|नाव|नाम)\s*[:：]\s*", re.IGNORECASE)
LEADING_ROLL = re.compile(r"^\s*(\d{1,6})[.)]?\s+(.*)$")


class UnsupportedDocument(ValueError):
    """The upload is neither a CSV nor a readable PDF."""


def normalize_header(header: Optional[str]) -> str:
    h = (header or "").replace("\ufeff", "").strip().casefold()
    return re.sub(r"[\s\-]+", "_", h)


def _clean(value) -> str:
    if value is None:
        return ""
    if isinstance(value, list):
        value = ",".join(value)
    return str(value).strip()


def _digits(value: str) -> str:
    return value.translate(DEVANAGARI_DIGITS)


def _resolve_columns(fieldnames: Sequence[str], aliases: Dict[str, Tuple[str, ...]]) -> Dict[str, str]:
    by_norm: Dict[str, str] = {}
    for name in fieldnames:
        by_norm.setdefault(normalize_header(name), name)
    columns = {}
    for field, names in aliases.items():
        for alias in names:
            if alias in by_norm:
                columns[field] = by_norm[alias]
                break
    return columns


def dedupe(rows: Iterable[Union[BookImportRow, StudentImportRow]]) -> List[Union[BookImportRow, StudentImportRow]]:
    """Drop later rows whose composite key repeats within the same document."""
    seen: Set[str] = set()
    out = []
    for row in rows:
        key = row.dedup_key()
        if key is not None:
            if key in seen:
                logger.debug(f"Duplicate row dropped: {key}")
                continue
            seen.add(key)
        out.append(row)
    return out


def _book_row(values: Dict[str, str], source_row: Optional[int]) -> BookImportRow:
    return BookImportRow(
        title=values.get("title", ""),
        author=values.get("author", ""),
        isbn=_digits(values.get("isbn", "")),
        publisher=values.get("publisher", ""),
        category=values.get("category", ""),
        publication_year=_digits(values.get("publication_year", "")),
        total_copies=_digits(values.get("total_copies", "")) or "1",
        shelf_location=values.get("shelf_location", ""),
        description=values.get("description", ""),
        source_row=source_row,
    )


def canonical_program(value: str) -> str:
    for program in PROGRAMS:
        if program.casefold() == value.replace(".", "").strip().casefold():
            return program
    return value.strip()


def _student_row(values: Dict[str, str], source_row: Optional[int]) -> StudentImportRow:
    level = (values.get("course_level") or "UG").upper()
    year_text = _digits(values.get("year") or "1")
    try:
        year = int(year_text)
    except ValueError:
        # left for validation to report against the row
        year = 0
    return StudentImportRow(
        full_name=values.get("full_name", ""),
        email=values.get("email") or None,
        course_level=level if level in COURSE_LEVELS else "UG",
        program=canonical_program(values.get("program") or "BCom"),
        year=year,
        division=values.get("division", ""),
        roll_number=values.get("roll_number", ""),
        student_number=values.get("student_number") or None,
        source_row=source_row,
    )


def extract_csv(text: str, schema: ImportSchema) -> List[Union[BookImportRow, StudentImportRow]]:
    schema = ImportSchema(schema)
    aliases = BOOK_CSV_ALIASES if schema == ImportSchema.BOOK else STUDENT_CSV_ALIASES
    build = _book_row if schema == ImportSchema.BOOK else _student_row

    reader = csv.DictReader(io.StringIO(text.lstrip("\ufeff")), skipinitialspace=True)
    if not reader.fieldnames:
        return []
    columns = _resolve_columns(reader.fieldnames, aliases)
    if not columns:
        logger.info(f"No recognised {schema.value} columns in CSV header: {reader.fieldnames}")
        return []

    rows = []
    for raw in reader:
        values = {field: _clean(raw.get(col)) for field, col in columns.items()}
        if not any(values.values()):
            continue
        row = build(values, reader.line_num)
        if row.has_required_fields():
            rows.append(row)
        else:
            logger.debug(f"CSV line {reader.line_num} missing required {schema.value} fields")
    return dedupe(rows)


# PDF: book lists


class BookBlock:
    """Working state of one candidate record while the rules run over it."""

    def __init__(self, lines: List[str], number: int):
        self.lines = lines
        self.number = number
        self.fields: Dict[str, str] = {}
        self.used: Set[int] = set()

    def missing(self, *names: str) -> bool:
        return any(not self.fields.get(n) for n in names)

    def unused_lines(self) -> List[str]:
        return [ln for i, ln in enumerate(self.lines) if i not in self.used and ln.strip()]


class Rule(NamedTuple):
    name: str
    applies: Callable[[BookBlock], bool]
    apply: Callable[[BookBlock], None]


def _labeled_pairs(line: str) -> List[Tuple[str, str]]:
    pairs = []
    for segment in PAIR_SEPARATOR.split(line):
        m = LABELED_PAIR.match(segment)
        if m:
            pairs.append((_LABEL_TO_FIELD[m.group("label").casefold()], (m.group("value") or "").strip()))
    return pairs


def _labeled_value(field: str, value: str) -> str:
    value = _digits(value)
    if field == "total_copies":
        m = re.search(r"\d+", value)
        return m.group(0) if m else ""
    if field == "publication_year":
        m = YEAR_TOKEN.search(value)
        return m.group(0) if m else ""
    if field == "isbn":
        m = ISBN_TOKEN.search(value)
        return normalize_isbn(m.group(0) if m else value)
    return value


def apply_labeled_fields(block: BookBlock):
    for i, line in enumerate(block.lines):
        pairs = _labeled_pairs(line)
        if not pairs:
            continue
        block.used.add(i)
        for field, value in pairs:
            if value and not block.fields.get(field):
                block.fields[field] = _labeled_value(field, value)


def apply_isbn_token(block: BookBlock):
    for i, line in enumerate(block.lines):
        for m in ISBN_TOKEN.finditer(line):
            if looks_like_isbn(m.group(0)):
                block.fields["isbn"] = normalize_isbn(m.group(0))
                rest = re.sub(r"(?i)\bisbn(?:-1[03])?\b[:\s]*", "", line.replace(m.group(0), "")).strip(" :-,")
                if not rest:
                    block.used.add(i)
                return


def apply_by_split(block: BookBlock):
    for i, line in enumerate(block.lines):
        if i in block.used or not line.strip():
            continue
        m = BY_SPLIT.match(line.strip())
        if m:
            block.fields.setdefault("title", "")
            block.fields.setdefault("author", "")
            if not block.fields["title"]:
                block.fields["title"] = m.group("title").strip(" ,;:-")
            if not block.fields["author"]:
                block.fields["author"] = m.group("author").strip(" ,;:-")
            block.used.add(i)
        # only the first free line is considered
        return


def apply_line_fallback(block: BookBlock):
    free = block.unused_lines()
    if block.missing("title") and free:
        block.fields["title"] = free.pop(0).strip()
        if block.missing("author"):
            block.fields["author"] = free.pop(0).strip() if free else "Unknown"
    if block.missing("author"):
        block.fields["author"] = "Unknown"


def apply_year_token(block: BookBlock):
    text = "\n".join(block.lines)
    for field in ("title", "author", "isbn"):
        value = block.fields.get(field)
        if value:
            text = text.replace(value, " ")
    # hyphenated ISBNs survive the replacement above
    text = ISBN_TOKEN.sub(" ", text)
    m = YEAR_TOKEN.search(text)
    if m:
        block.fields["publication_year"] = m.group(1)


# evaluated in order; earlier rules take precedence over later ones
BOOK_BLOCK_RULES: List[Rule] = [
    Rule("labeled_fields", lambda b: True, apply_labeled_fields),
    Rule("isbn_token", lambda b: b.missing("isbn"), apply_isbn_token),
    Rule("title_by_author", lambda b: b.missing("title", "author"), apply_by_split),
    Rule("first_lines_title_author", lambda b: b.missing("title", "author"), apply_line_fallback),
    Rule("year_token", lambda b: b.missing("publication_year"), apply_year_token),
]


def _page_lines(page: Union[str, Sequence[TextFragment]]) -> List[str]:
    if isinstance(page, str):
        lines = page.splitlines()
    else:
        lines = fragments_to_lines(list(page))
    return [" ".join(_digits(ln).split()) for ln in lines]


def split_blocks(lines: List[str]) -> List[List[str]]:
    """
    Blank lines separate records; a label seen twice in one block also starts
    a new record. A text with no separation at all and no labels is read as
    one record per line.
    """
    blocks: List[List[str]] = []
    current: List[str] = []
    seen_fields: Set[str] = set()
    for line in lines:
        if not line.strip():
            if current:
                blocks.append(current)
            current, seen_fields = [], set()
            continue
        fields = {f for f, _ in _labeled_pairs(line)}
        if fields & seen_fields and current:
            blocks.append(current)
            current, seen_fields = [], set()
        seen_fields |= fields
        current.append(line)
    if current:
        blocks.append(current)

    if len(blocks) == 1 and len(blocks[0]) > 1 and not any(_labeled_pairs(ln) for ln in blocks[0]):
        return [[ln] for ln in blocks[0]]
    return blocks


def extract_book_block(lines: List[str], number: int, rules: Sequence[Rule] = BOOK_BLOCK_RULES) -> Optional[BookImportRow]:
    block = BookBlock(lines, number)
    for rule in rules:
        if rule.applies(block):
            rule.apply(block)
    if not block.fields.get("title"):
        return None
    return _book_row(block.fields, number)


def extract_book_pdf(pages: Sequence[Union[str, Sequence[TextFragment]]]) -> List[BookImportRow]:
    # pages run on as one text; a page break is not a record boundary
    lines: List[str] = []
    for page in pages:
        lines.extend(_page_lines(page))
    rows = []
    for number, block in enumerate(split_blocks(lines), start=1):
        row = extract_book_block(block, number)
        if row is not None and row.has_required_fields():
            rows.append(row)
    return dedupe(rows)


# PDF: student rosters


def name_before_email(text: str) -> Tuple[str, str]:
    """Pick (name, roll number) out of the text preceding an e-mail on its line."""
    roll = ""
    for segment in re.split(r"[-,|]", text):
        segment = NAME_LABEL.sub("", segment).strip(" :;\t")
        if not segment:
            continue
        if segment.isdigit():
            roll = roll or segment
            continue
        m = LEADING_ROLL.match(segment)
        if m:
            roll = roll or m.group(1)
            segment = m.group(2).strip()
        if re.search(r"[^\W\d_]", segment):
            return segment, roll
    return "", roll


def name_from_email(email: str) -> str:
    local = email.split("@", 1)[0]
    return " ".join(re.sub(r"[._\-+]+", " ", local).split())


def extract_student_pdf(pages: Sequence[Union[str, Sequence[TextFragment]]]) -> List[StudentImportRow]:
    rows: List[StudentImportRow] = []
    seen: Set[str] = set()
    for page in pages:
        for line in _page_lines(page):
            start = 0
            for m in EMAIL.finditer(line):
                before = line[start:m.start()]
                start = m.end()
                email = m.group(0)
                if email.lower() in seen:
                    continue
                seen.add(email.lower())
                name, roll = name_before_email(before)
                rows.append(
                    StudentImportRow(
                        full_name=name or name_from_email(email),
                        email=email,
                        division=settings.import_default_division,
                        roll_number=roll or str(len(rows) + 1),
                        source_row=len(rows) + 1,
                    )
                )
    return [r for r in dedupe(rows) if r.has_required_fields()]


def extract_pdf(pages, schema: ImportSchema):
    if ImportSchema(schema) == ImportSchema.BOOK:
        return extract_book_pdf(pages)
    return extract_student_pdf(pages)


def extract_document(
    filename: str, data: bytes, schema: ImportSchema, content_type: Optional[str] = None
) -> List[Union[BookImportRow, StudentImportRow]]:
    """Dispatch an uploaded file to the CSV or PDF extractor."""
    name = (filename or "").lower()
    ctype = (content_type or "").lower()
    if name.endswith(".csv") or ctype in ("text/csv", "application/vnd.ms-excel"):
        text = data.decode("utf-8-sig", errors="replace")
        return extract_csv(text, schema)
    if name.endswith(".pdf") or ctype == "application/pdf":
        try:
            pages = page_fragments(data)
        except Exception as e:
            logger.warning(f"Could not read PDF {filename}: {e}")
            raise UnsupportedDocument("Failed to read PDF file") from e
        return extract_pdf(pages, schema)
    raise UnsupportedDocument("Upload a CSV or PDF")


def screen_existing(rows, lookup: Callable[[List[str]], Set[str]]):
    """
    Split rows into (fresh, already_existing) using the store's key lookup
    (ISBN for books, e-mail for students). Rows without a key are fresh.
    """
    keys = sorted({row.existing_key() for row in rows if row.existing_key()})
    existing = lookup(keys) if keys else set()
    fresh, found = [], []
    for row in rows:
        key = row.existing_key()
        (found if key and key in existing else fresh).append(row)
    return fresh, found


def validate_book_row(row: BookImportRow) -> List[str]:
    errors = []
    if not row.title.strip():
        errors.append("Title is required")
    if not row.author.strip():
        errors.append("Author is required")
    if row.publication_year:
        try:
            if int(row.publication_year) < 1000:
                errors.append("Invalid publication year")
        except ValueError:
            errors.append("Invalid publication year")
    if row.total_copies:
        try:
            if int(row.total_copies) < 1:
                errors.append("Total copies must be at least 1")
        except ValueError:
            errors.append("Total copies must be at least 1")
    return errors


def validate_student_row(row: StudentImportRow) -> List[str]:
    errors = []
    if not row.has_required_fields():
        errors.append("Full name, program, division and roll number are required")
    if row.program not in PROGRAMS:
        errors.append(f"Unknown program {row.program}")
    if row.course_level not in COURSE_LEVELS:
        errors.append(f"Unknown course level {row.course_level}")
    if row.year < 1:
        errors.append("Year must be at least 1")
    if row.email and not EMAIL.fullmatch(row.email):
        errors.append(f"Invalid email {row.email}")
    return errors


def _template(headers: List[str], rows: List[List[str]]) -> str:
    out = io.StringIO()
    writer = csv.writer(out, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(headers)
    writer.writerows(rows)
    return out.getvalue()


def book_template_csv() -> str:
    return _template(
        ["title", "author", "isbn", "publisher", "category", "publication_year", "total_copies", "location_shelf", "description"],
        [
            ["The Great Gatsby", "F. Scott Fitzgerald", "9780743273565", "Scribner", "Fiction", "1925", "3", "A-12",
             "A classic American novel about the Jazz Age"],
            ["To Kill a Mockingbird", "Harper Lee", "9780061120084", "J.B. Lippincott & Co.", "Fiction", "1960", "2", "A-15",
             "A gripping tale of racial injustice and childhood innocence"],
        ],
    )


def student_template_csv() -> str:
    return _template(
        ["full_name", "email", "course_level", "program", "year", "division", "roll_number", "student_number"],
        [
            ["Alice Johnson", "alice@example.com", "UG", "BCom", "1", "A", "123", ""],
            ["Bob Kumar", "", "PG", "MCom", "2", "B", "45", "STU-00045"],
        ],
    )
