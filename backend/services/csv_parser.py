"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  CRM - Lecture CSV (import clients)                                          ║
║                                                                              ║
║  - BOM supprimé                                                              ║
║  - Séparateur détecté parmi , ; TAB | (fréquence sur les 5 premières lignes) ║
║  - Ligne d'en-tête OBLIGATOIRE                                               ║
║  - Valeurs trimmées, lignes vides et commentaires (#) ignorés                ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import csv
import io
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Union

logger = logging.getLogger("csv_parser")

DELIMITERS = [",", ";", "\t", "|"]
DEFAULT_DELIMITER = ","
SNIFF_LINES = 5
BOM = "\ufeff"


@dataclass
class ParsedRow:
    row_number: int
    data: Dict[str, str]


@dataclass
class CsvDocument:
    headers: List[str]
    rows: List[ParsedRow]
    delimiter: str = DEFAULT_DELIMITER


@dataclass
class FileCheck:
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    line_count: int = 0


class CsvFormatError(Exception):
    """CSV illisible (pas d'en-tête, encodage, quotes cassées)"""
    pass


def decode_csv(content: Union[bytes, str]) -> str:
    """bytes → str sans BOM (UTF-8, repli latin-1 pour les exports Excel)"""
    if isinstance(content, bytes):
        try:
            text = content.decode("utf-8")
        except UnicodeDecodeError:
            text = content.decode("latin-1")
    else:
        text = content
    return text.lstrip(BOM)


def detect_delimiter(text: str) -> str:
    """Séparateur le plus fréquent sur les premières lignes, virgule par défaut"""
    lines = decode_csv(text).splitlines()[:SNIFF_LINES]
    counts = {d: sum(line.count(d) for line in lines) for d in DELIMITERS}
    best = max(DELIMITERS, key=lambda d: counts[d])
    return best if counts[best] > 0 else DEFAULT_DELIMITER


def _clean_header(header: str) -> str:
    return str(header or "").replace(BOM, "").replace("\u00a0", " ").strip()


def parse_csv(content: Union[bytes, str]) -> CsvDocument:
    """
    Parse le CSV complet en lignes {en-tête: valeur}.

    row_number commence à 1 pour la première ligne de données.
    Cellules manquantes → "", cellules en trop ignorées.
    """
    text = decode_csv(content)
    delimiter = detect_delimiter(text)
    reader = csv.reader(io.StringIO(text, newline=""), delimiter=delimiter)

    try:
        headers = [_clean_header(h) for h in next(reader, [])]
        if not any(headers):
            raise CsvFormatError("CSV header row is missing")

        rows = []
        row_number = 0
        for record in reader:
            if not any((cell or "").strip() for cell in record):
                continue
            row_number += 1
            data = {}
            for index, header in enumerate(headers):
                if not header:
                    continue
                value = record[index] if index < len(record) else ""
                data[header] = (value or "").strip()
            rows.append(ParsedRow(row_number=row_number, data=data))
    except csv.Error as e:
        raise CsvFormatError(f"CSV parsing failed: {e}") from e

    logger.info(f"CSV parsed: {len(rows)} rows, {len(headers)} columns, delimiter={delimiter!r}")
    return CsvDocument(headers=headers, rows=rows, delimiter=delimiter)


def validate_csv_file(content: bytes, max_size: int) -> FileCheck:
    """Contrôles rapides avant parsing: taille, vide, BOM, séparateurs"""
    errors = []
    warnings = []

    if len(content) > max_size:
        errors.append(f"File size exceeds maximum allowed size of {max_size / (1024 * 1024):g}MB")
    if len(content) == 0:
        errors.append("File is empty")

    text = content.decode("utf-8", errors="replace")
    if text.startswith(BOM):
        warnings.append("File contains BOM (Byte Order Mark), which will be removed")
    if not any(d in text for d in DELIMITERS):
        warnings.append("File does not appear to be a valid CSV file (no delimiters found)")

    lines = text.splitlines()
    if len(lines) < 2:
        warnings.append("File contains only one line (no data rows)")

    return FileCheck(is_valid=not errors, errors=errors, warnings=warnings, line_count=len(lines))
