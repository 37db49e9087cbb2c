import logging
from io import BytesIO
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd
from fastapi import HTTPException, UploadFile
from openpyxl import load_workbook

from analyst.core.config import Settings, get_settings
from analyst.core.errors import ErrorCodes, get_error_response
from analyst.core.performance import track_performance
from analyst.core.sanitization import neutralize_formula_cells, sanitize_filename, validate_column_name

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {'.csv', '.xlsx', '.xls'}

MIME_TYPE_MAP = {
    'text/csv': '.csv',
    'application/vnd.ms-excel': '.xls',
    'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet': '.xlsx',
}

DANGEROUS_MIME_TYPES = {
    'application/x-executable',
    'application/x-sharedlib',
    'application/x-msdownload',
    'text/html',
    'application/javascript',
}


def _bad_file(code: str, detail: Optional[str] = None) -> HTTPException:
    return HTTPException(status_code=400, detail=get_error_response(code, detail))


def read_merged_workbook(contents: bytes) -> Optional[pd.DataFrame]:
    """
    Read the largest sheet of an xlsx workbook with merged ranges filled
    from their top-left cell. Returns None when openpyxl cannot read it.
    """
    try:
        wb = load_workbook(BytesIO(contents), data_only=True)
    except Exception as e:
        logger.warning(f"openpyxl could not open workbook, falling back to pandas: {e}")
        return None

    ws = max((wb[name] for name in wb.sheetnames), key=lambda sheet: sheet.max_row, default=wb.active)

    merged_ranges = list(ws.merged_cells.ranges)
    for merged in merged_ranges:
        value = ws.cell(merged.min_row, merged.min_col).value
        ws.unmerge_cells(str(merged))
        for row in range(merged.min_row, merged.max_row + 1):
            for col in range(merged.min_col, merged.max_col + 1):
                ws.cell(row, col, value)
    if merged_ranges:
        logger.info(f"Filled {len(merged_ranges)} merged ranges in sheet '{ws.title}'")

    raw = pd.DataFrame(ws.values)
    if raw.empty:
        return raw
    header_row = find_header_row(raw)
    df = raw.iloc[header_row + 1:].reset_index(drop=True)
    df.columns = [f"Column {i + 1}" if v is None else v for i, v in enumerate(raw.iloc[header_row])]
    return df


def _looks_numeric(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float, np.number)):
        return True
    try:
        float(str(value).replace(',', '').strip())
        return True
    except ValueError:
        return False


def find_header_row(df: pd.DataFrame, max_scan_rows: int = 10) -> int:
    """
    Guess which of the first rows holds the column headers.

    Header rows are filled across, mostly non-numeric text and mostly
    unique. Title rows above them are sparse. Row 0 gets a small bonus so
    ordinary files keep their first row.
    """
    if len(df) < 2:
        return 0

    width = len(df.columns)
    best_row, best_score = 0, 0.0
    for row_idx in range(min(max_scan_rows, len(df))):
        row = df.iloc[row_idx]
        present = [v for v in row if pd.notna(v) and str(v).strip()]
        if not present:
            continue

        fill = len(present) / width
        text = sum(1 for v in present if not _looks_numeric(v)) / len(present)
        unique = len({str(v).strip().lower() for v in present}) / len(present)

        score = fill * 0.4 + text * 0.4 + unique * 0.2
        if row_idx == 0:
            score += 0.05
        if score > best_score:
            best_row, best_score = row_idx, score

    return best_row


def validate_file_extension(filename: str) -> str:
    if not filename:
        raise _bad_file(ErrorCodes.INVALID_FILE_TYPE, "Filename is required")

    file_ext = Path(filename).suffix.lower()
    if file_ext not in ALLOWED_EXTENSIONS:
        raise _bad_file(
            ErrorCodes.INVALID_FILE_TYPE,
            f"Unsupported file format: {file_ext or 'none'}. Allowed formats: {', '.join(sorted(ALLOWED_EXTENSIONS))}"
        )
    return file_ext


def validate_mime_type(content_type: Optional[str], file_ext: str) -> None:
    """Reject MIME types that are never spreadsheets; mismatches only warn."""
    if not content_type:
        return
    content_type = content_type.lower()
    expected_ext = MIME_TYPE_MAP.get(content_type)
    if expected_ext and expected_ext != file_ext:
        logger.warning(f"MIME type {content_type} doesn't match extension {file_ext}")
    if content_type in DANGEROUS_MIME_TYPES:
        raise _bad_file(ErrorCodes.INVALID_FILE_TYPE, f"File type '{content_type}' is not allowed.")


def _read_csv(contents: bytes) -> pd.DataFrame:
    for encoding in ('utf-8', 'latin1'):
        try:
            raw = pd.read_csv(BytesIO(contents), header=None, encoding=encoding, dtype=str, keep_default_na=False)
            break
        except UnicodeDecodeError:
            continue
        except (pd.errors.ParserError, pd.errors.EmptyDataError) as e:
            raise _bad_file(ErrorCodes.PARSE_ERROR, str(e)) from e
    else:
        raise _bad_file(ErrorCodes.PARSE_ERROR, "Unable to decode the CSV file as UTF-8 or Latin-1")

    raw = raw.replace('', np.nan)
    header_row = find_header_row(raw)
    if header_row > 0:
        logger.info(f"Auto-detected header at row {header_row}, skipping {header_row} metadata rows")
    try:
        return pd.read_csv(BytesIO(contents), skiprows=range(header_row), header=0, encoding=encoding)
    except pd.errors.ParserError as e:
        raise _bad_file(ErrorCodes.PARSE_ERROR, str(e)) from e


def _read_excel(contents: bytes, file_ext: str) -> pd.DataFrame:
    if file_ext == '.xlsx':
        df = read_merged_workbook(contents)
        if df is not None:
            return df

    try:
        excel_file = pd.ExcelFile(BytesIO(contents))
        sheets = {}
        for name in excel_file.sheet_names:
            try:
                sheets[name] = pd.read_excel(excel_file, sheet_name=name)
            except ValueError as e:
                logger.warning(f"Skipping unreadable sheet '{name}': {e}")
    except ValueError as e:
        raise _bad_file(ErrorCodes.PARSE_ERROR, "Unable to parse Excel file. Please ensure the file is not corrupted.") from e

    if not sheets:
        raise _bad_file(ErrorCodes.PARSE_ERROR, "No readable sheets in workbook")
    name, df = max(sheets.items(), key=lambda item: len(item[1]))
    if len(sheets) > 1:
        logger.info(f"Multi-sheet workbook: selected '{name}' ({len(df)} rows) from {len(sheets)} sheets")
    return df


@track_performance("parse_file")
async def parse_file(file: UploadFile) -> pd.DataFrame:
    """
    Parse an uploaded CSV or Excel file into a DataFrame.

    Raises:
        HTTPException: 400 with a structured error body for any unreadable file
    """
    file_ext = validate_file_extension(file.filename)
    validate_mime_type(file.content_type, file_ext)

    contents = await file.read()
    if not contents:
        raise _bad_file(ErrorCodes.FILE_EMPTY)

    if file_ext == '.csv':
        df = _read_csv(contents)
    else:
        df = _read_excel(contents, file_ext)

    if df.empty:
        raise _bad_file(ErrorCodes.FILE_EMPTY, "File appears to be empty or contains no data")

    logger.info(f"Parsed file: {sanitize_filename(file.filename)}, shape: {df.shape}")
    return df


def validate_file_content(df: pd.DataFrame, settings: Optional[Settings] = None) -> None:
    """
    Enforce row, column and cell-size limits and safe column names.

    Raises:
        HTTPException: if any limit is exceeded
    """
    settings = settings or get_settings()
    if len(df) > settings.max_file_rows:
        raise _bad_file(
            ErrorCodes.PROCESSING_ERROR,
            f"File contains too many rows ({len(df):,}). Maximum allowed: {settings.max_file_rows:,} rows."
        )
    if len(df.columns) > settings.max_file_columns:
        raise _bad_file(
            ErrorCodes.PROCESSING_ERROR,
            f"File contains too many columns ({len(df.columns)}). Maximum allowed: {settings.max_file_columns}."
        )

    for col in df.columns:
        if not validate_column_name(str(col)):
            raise _bad_file(ErrorCodes.PARSE_ERROR, f"Invalid column name: '{col}'")

    for col in df.columns:
        if df[col].dtype == 'object':
            max_length = df[col].dropna().astype(str).str.len().max()
            if pd.notna(max_length) and max_length > settings.max_cell_size_bytes:
                raise _bad_file(
                    ErrorCodes.PROCESSING_ERROR,
                    f"Column '{col}' holds a value larger than {settings.max_cell_size_bytes} bytes."
                )


def clean_column_name(col: Any) -> str:
    """Collapse newlines and runs of whitespace in a header."""
    return ' '.join(str(col).replace('\n', ' ').replace('\r', ' ').split())


def clean_dataframe(df: pd.DataFrame) -> pd.DataFrame:
    df = df.dropna(how='all', axis=0).dropna(how='all', axis=1)
    df.columns = [clean_column_name(col) for col in df.columns]
    return df


def _json_cell(value: Any) -> Any:
    if value is None or value is pd.NaT:
        return None
    if isinstance(value, pd.Timestamp):
        return None if pd.isna(value) else value.strftime('%Y-%m-%dT%H:%M:%S')
    if isinstance(value, np.generic):
        value = value.item()
    if isinstance(value, float) and np.isnan(value):
        return None
    return value


def dataframe_to_rows(df: pd.DataFrame) -> List[Dict[str, Any]]:
    """
    Header-mapped rows for the engine: NaN becomes None, timestamps become
    ISO strings, and formula-prone text is neutralized.
    """
    records = df.astype(object).to_dict(orient='records')
    rows = [{str(key): _json_cell(value) for key, value in record.items()} for record in records]
    return neutralize_formula_cells(rows)
