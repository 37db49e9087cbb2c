"""
Input sanitization utilities for user-provided data.
"""
import re
from typing import Any, Dict, List

FORMULA_PREFIXES = ('=', '+', '-', '@')
_PLAIN_NUMBER = re.compile(r'^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$')
_CONTROL_CHARS = re.compile(r'[\x00-\x1f\x7f-\x9f]')


def sanitize_filename(filename: str, max_length: int = 255) -> str:
    """
    Sanitize filename to prevent path traversal and log injection.

    Args:
        filename: Original filename
        max_length: Maximum length of sanitized filename

    Returns:
        Sanitized filename safe for logging and storage
    """
    if not filename:
        return "unknown"

    filename = filename.split('/')[-1].split('\\')[-1]
    filename = _CONTROL_CHARS.sub('', filename)
    filename = filename.strip('. ')

    if len(filename) > max_length:
        filename = filename[:max_length]

    return filename or "unknown"


def sanitize_for_logging(value: str, max_length: int = 500) -> str:
    """
    Sanitize value for safe logging (prevents log injection).
    """
    if not value:
        return ""

    value = re.sub(r'[\r\n]', ' ', value)
    value = _CONTROL_CHARS.sub('', value)

    if len(value) > max_length:
        value = value[:max_length] + "..."

    return value


def sanitize_for_prompt(value: Any, max_length: int = 2000) -> str:
    """
    Make user-controlled text safe to embed in an AI prompt.

    Strips control characters and code fences and truncates long values so a
    column name or chat message cannot break out of its prompt section.
    """
    if value is None:
        return ""
    text = str(value)
    text = text.replace("```", "'''")
    text = re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]', '', text)
    if len(text) > max_length:
        text = text[:max_length] + "..."
    return text


def neutralize_formula(value: Any) -> Any:
    """
    Prefix spreadsheet formula triggers with a quote so the cell stays text.

    Plain signed numbers such as "-12.5" are left alone.
    """
    if not isinstance(value, str) or not value:
        return value
    if value[0] not in FORMULA_PREFIXES:
        return value
    if value[0] in '+-' and _PLAIN_NUMBER.match(value.strip()):
        return value
    return "'" + value


def neutralize_formula_cells(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Return new rows with every formula-prone string cell neutralized."""
    return [
        {key: neutralize_formula(value) for key, value in row.items()}
        for row in rows
    ]


def validate_column_name(name: str) -> bool:
    """
    Validate that a column name is safe.

    Args:
        name: Column name to validate

    Returns:
        True if safe, False otherwise
    """
    if not name or len(name) > 1000:
        return False

    dangerous_patterns = [
        r'\.\.',  # Path traversal
        # Newlines and tabs are common in headers, other control chars are not
        r'[\x00-\x08\x0b\x0c\x0e-\x1f]',
        r'^(CON|PRN|AUX|NUL|COM[1-9]|LPT[1-9])$',  # Reserved names (Windows)
    ]

    for pattern in dangerous_patterns:
        if re.search(pattern, name, re.IGNORECASE):
            return False

    return True
