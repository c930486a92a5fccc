"""
Data manager for CSV import and export of the question bank.
"""
import csv
import io
import logging
import time
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .models import Question, VALID_OPTIONS
from .question_store import QuestionStore


CSV_HEADER = [
    "Kategorie",
    "Unter-Kategorie",
    "Frage #",
    "Frage",
    "Antwort A",
    "Antwort B",
    "Antwort C",
    "Antwort D",
    "Richtige Antwort",
    "Abbildung",
    "TimesAnswered",
    "TimesCorrect",
    "TimesChosenA",
    "TimesChosenB",
    "TimesChosenC",
    "TimesChosenD",
    "timesCorrectRecent",
]

# CSV column -> Question field
TEXT_COLUMNS = {
    "Kategorie": "category",
    "Unter-Kategorie": "sub_category",
    "Frage #": "question_number",
    "Frage": "text",
    "Antwort A": "option_a",
    "Antwort B": "option_b",
    "Antwort C": "option_c",
    "Antwort D": "option_d",
    "Richtige Antwort": "correct_answer",
}

COUNTER_COLUMNS = {
    "TimesAnswered": "times_answered",
    "TimesCorrect": "times_correct",
    "TimesChosenA": "times_chosen_a",
    "TimesChosenB": "times_chosen_b",
    "TimesChosenC": "times_chosen_c",
    "TimesChosenD": "times_chosen_d",
    "timesCorrectRecent": "times_correct_recent",
}

REQUIRED_COLUMNS = [
    "Kategorie",
    "Unter-Kategorie",
    "Frage",
    "Antwort A",
    "Antwort B",
    "Antwort C",
    "Antwort D",
    "Richtige Antwort",
]


class ImportFatalFailure(Exception):
    """Raised when a CSV source cannot be imported at all."""
    pass


class ImportParseFailure(ValueError):
    """Raised for a single malformed CSV row; the row is skipped."""
    pass


def parse_counter(value: Optional[str]) -> int:
    """Parse a counter cell, treating missing or unparseable values as 0."""
    if value is None:
        return 0
    try:
        return max(int(value.strip()), 0)
    except ValueError:
        return 0


def parse_row(row: Dict[Optional[str], Optional[str]]) -> Question:
    """
    Build a Question from one DictReader row.

    Raises:
        ImportParseFailure: If the row has surplus cells, lacks a text cell,
            or names no valid correct answer
    """
    if None in row:
        raise ImportParseFailure(f"row has {len(row[None])} cells more than the header")

    values = {}
    for column, field_name in TEXT_COLUMNS.items():
        cell = row.get(column)
        if cell is None:
            if column in REQUIRED_COLUMNS:
                raise ImportParseFailure(f"missing value for '{column}'")
            cell = ""
        values[field_name] = cell

    values["correct_answer"] = values["correct_answer"].strip().upper()
    if values["correct_answer"] not in VALID_OPTIONS:
        raise ImportParseFailure(f"invalid correct answer {row.get('Richtige Antwort')!r}")

    image_name = (row.get("Abbildung") or "").strip()
    values["image_name"] = image_name or None

    for column, field_name in COUNTER_COLUMNS.items():
        values[field_name] = parse_counter(row.get(column))

    return Question(**values)


def parse_csv_text(text: str) -> Tuple[List[Question], List[str]]:
    """
    Parse CSV text with a header row into questions.

    Malformed rows are skipped and reported in the returned error list.

    Raises:
        ImportFatalFailure: If the header is missing or lacks required columns
    """
    reader = csv.DictReader(io.StringIO(text, newline=""))
    try:
        header = reader.fieldnames
    except csv.Error as e:
        raise ImportFatalFailure(f"Could not read CSV header: {e}") from e

    if not header:
        raise ImportFatalFailure("CSV file is empty")

    missing = [column for column in REQUIRED_COLUMNS if column not in header]
    if missing:
        raise ImportFatalFailure(f"CSV header is missing columns: {', '.join(missing)}")

    questions: List[Question] = []
    errors: List[str] = []
    while True:
        try:
            row = next(reader)
        except StopIteration:
            break
        except csv.Error as e:
            errors.append(f"line {reader.line_num}: {e}")
            continue

        try:
            questions.append(parse_row(row))
        except ImportParseFailure as e:
            errors.append(f"line {reader.line_num}: {e}")

    return questions, errors


def format_csv(questions: List[Question]) -> str:
    """Render questions in the import format: unquoted header, quoted text, bare counters."""
    buffer = io.StringIO()
    buffer.write(",".join(CSV_HEADER) + "\n")
    writer = csv.writer(buffer, quoting=csv.QUOTE_NONNUMERIC, lineterminator="\n")
    for question in questions:
        writer.writerow(
            [getattr(question, field_name) for field_name in TEXT_COLUMNS.values()]
            + [question.image_name or ""]
            + [int(getattr(question, field_name)) for field_name in COUNTER_COLUMNS.values()]
        )
    return buffer.getvalue()


class DataManager:
    """Imports and exports the question bank as CSV."""

    def __init__(self, store: QuestionStore, bundled_csv_path: str = "./data/questions_database.csv"):
        """
        Initialize DataManager.

        Args:
            store: Question store receiving imports and serving exports
            bundled_csv_path: CSV shipped with the bot, used to seed an empty store
        """
        self.store = store
        self.bundled_csv_path = Path(bundled_csv_path)
        self.logger = logging.getLogger(__name__)
        self.load_errors: List[str] = []  # row-level errors of the last import

    def import_csv_bytes(self, data: bytes, source_name: str = "upload") -> Dict[str, any]:
        """
        Replace the question bank with the rows of a CSV document.

        The whole document is parsed before the store is touched, so a fatal
        failure leaves the existing bank in place.

        Args:
            data: Raw CSV bytes (UTF-8, optional BOM)
            source_name: Name used in log and error messages

        Returns:
            Dictionary with imported and skipped counts and row errors

        Raises:
            ImportFatalFailure: If the document cannot be decoded or has no usable header
            PersistenceWriteFailure: If the store rejects the new bank
        """
        self.load_errors.clear()
        try:
            text = data.decode("utf-8-sig")
        except UnicodeDecodeError as e:
            self.logger.error(f"Cannot decode {source_name}: {e}")
            raise ImportFatalFailure(f"{source_name} is not valid UTF-8 text") from e

        questions, errors = parse_csv_text(text)
        self.load_errors.extend(errors)
        for error in errors:
            self.logger.warning(f"Skipped row in {source_name}: {error}")

        if not questions:
            self.logger.warning(f"{source_name} contained no importable rows; question bank will be empty")

        imported = self.store.replace_all(questions)

        self.logger.info(f"Imported {imported} questions from {source_name}", extra={
            'event_type': 'csv_imported',
            'source': source_name,
            'imported': imported,
            'skipped': len(errors),
            'timestamp': time.time()
        })
        return {
            'imported': imported,
            'skipped': len(errors),
            'errors': list(errors),
        }

    def import_csv_file(self, file_path) -> Dict[str, any]:
        """Import a CSV file from disk. See ``import_csv_bytes``."""
        path = Path(file_path)
        try:
            data = path.read_bytes()
        except OSError as e:
            self.logger.error(f"Failed to read CSV file {path}: {e}")
            raise ImportFatalFailure(f"Cannot read {path.name}: {e}") from e
        return self.import_csv_bytes(data, source_name=path.name)

    def populate_from_bundled_csv_if_needed(self) -> Dict[str, any]:
        """
        Seed an empty store from the bundled CSV.

        Returns:
            Dictionary with 'populated' flag and, when populated, the import summary
        """
        count = self.store.get_question_count()
        if count > 0:
            self.logger.info(f"Question bank already holds {count} questions")
            return {'populated': False, 'reason': 'store not empty'}

        if not self.bundled_csv_path.exists():
            self.logger.warning(f"Bundled question file not found: {self.bundled_csv_path}")
            return {'populated': False, 'reason': 'bundled file missing'}

        summary = self.import_csv_file(self.bundled_csv_path)
        summary['populated'] = True
        return summary

    def export_csv(self) -> str:
        """Current question bank, statistics included, as CSV text."""
        questions = self.store.get_all_questions()
        self.logger.info(f"Exporting {len(questions)} questions")
        return format_csv(questions)

    def export_csv_bytes(self) -> bytes:
        return self.export_csv().encode("utf-8")

    def export_csv_file(self, file_path) -> Path:
        path = Path(file_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.export_csv(), encoding="utf-8", newline="")
        return path

    def get_load_errors(self) -> List[str]:
        return self.load_errors.copy()

    def has_load_errors(self) -> bool:
        return bool(self.load_errors)
