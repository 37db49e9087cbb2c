"""
Engine exceptions plus error message constants for user-friendly HTTP responses.
"""
from typing import Dict, Optional


class AnalystError(Exception):
    """Base class for every error raised by the analysis engine."""

    code = "ANALYST_ERROR"


class PlanError(AnalystError):
    """An AnalysisPlan is missing the columns its chart kind requires."""

    code = "PLAN_ERROR"


class TransformError(AnalystError):
    """Sandboxed transform code raised, or returned the wrong shape."""

    code = "TRANSFORM_ERROR"

    def __init__(self, transform_code: str, cause: str):
        self.transform_code = transform_code
        self.cause = cause
        super().__init__(cause)


class PreparationFailure(AnalystError):
    """The self-correcting preparation loop ran out of attempts."""

    code = "PREPARATION_FAILED"

    def __init__(self, last_error: str, attempts: int):
        self.last_error = last_error
        self.attempts = attempts
        super().__init__(
            f"Data preparation failed after {attempts} attempts. Last error: {last_error}"
        )


class BoundaryContractError(AnalystError):
    """An AI response could not be parsed or did not match its schema."""

    code = "AI_CONTRACT_VIOLATION"

    def __init__(self, message: str, raw: Optional[str] = None):
        self.raw = raw
        super().__init__(message)


class DomActionError(AnalystError):
    """A UI directive referenced an unknown card or an unknown tool."""

    code = "DOM_ACTION_ERROR"


class AIServiceError(AnalystError):
    """No AI provider is configured, or every provider failed after retries."""

    code = "AI_SERVICE_ERROR"


class SessionSupersededError(AnalystError):
    """A result arrived for a session generation that is no longer current."""

    code = "SESSION_SUPERSEDED"


class CardNotFoundError(AnalystError, KeyError):
    code = "CARD_NOT_FOUND"

    def __init__(self, card_id: str):
        self.card_id = card_id
        super().__init__(f"Card '{card_id}' does not exist")

    def __str__(self) -> str:
        return self.args[0]


# Error codes
class ErrorCodes:
    FILE_TOO_LARGE = "FILE_TOO_LARGE"
    FILE_EMPTY = "FILE_EMPTY"
    INVALID_FILE_TYPE = "INVALID_FILE_TYPE"
    PARSE_ERROR = "PARSE_ERROR"
    PROCESSING_ERROR = "PROCESSING_ERROR"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    CARD_NOT_FOUND = "CARD_NOT_FOUND"
    INVALID_CARD_UPDATE = "INVALID_CARD_UPDATE"
    NO_DATASET = "NO_DATASET"
    PREPARATION_FAILED = "PREPARATION_FAILED"
    AI_UNAVAILABLE = "AI_UNAVAILABLE"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    TIMEOUT = "TIMEOUT"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


# User-friendly error messages
ERROR_MESSAGES: Dict[str, Dict[str, str]] = {
    ErrorCodes.FILE_TOO_LARGE: {
        "message": "Your file is too large",
        "detail": "The uploaded file exceeds the size limit for a single analysis session.",
        "suggestion": "Try exporting only the columns you need, or split the file into smaller parts."
    },
    ErrorCodes.FILE_EMPTY: {
        "message": "Your file looks empty",
        "detail": "We couldn't find any rows in the file you uploaded.",
        "suggestion": "Make sure the file has a header row and at least one data row, then upload it again."
    },
    ErrorCodes.INVALID_FILE_TYPE: {
        "message": "We need a CSV or Excel file",
        "detail": "Only .csv, .xlsx and .xls files can be analyzed.",
        "suggestion": "Export your sheet as CSV from the File menu of your spreadsheet tool."
    },
    ErrorCodes.PARSE_ERROR: {
        "message": "We're having trouble reading your file",
        "detail": "The file could not be turned into rows and columns.",
        "suggestion": "Save the file again as a fresh CSV and check the column names for unusual characters."
    },
    ErrorCodes.PROCESSING_ERROR: {
        "message": "Something went wrong while analyzing",
        "detail": "We hit a snag while preparing or analyzing your data.",
        "suggestion": "Check that the first row holds the headers and remove completely empty rows or columns."
    },
    ErrorCodes.SESSION_NOT_FOUND: {
        "message": "This analysis session no longer exists",
        "detail": "The session may have expired or been reset.",
        "suggestion": "Start a new session and upload your file again."
    },
    ErrorCodes.CARD_NOT_FOUND: {
        "message": "That analysis card could not be found",
        "detail": "The card may have been removed when the session was reset.",
        "suggestion": "Refresh the session view to get the current list of cards."
    },
    ErrorCodes.INVALID_CARD_UPDATE: {
        "message": "That card change isn't valid",
        "detail": "The requested display setting is not supported for this card.",
        "suggestion": "Check the chart type and Top-N value, then try again."
    },
    ErrorCodes.NO_DATASET: {
        "message": "Please upload a file first",
        "detail": "The assistant needs a dataset before it can answer questions about it.",
        "suggestion": "Upload a CSV or Excel file to start the analysis."
    },
    ErrorCodes.PREPARATION_FAILED: {
        "message": "We couldn't clean up your data automatically",
        "detail": "The AI data preparation step failed repeatedly.",
        "suggestion": "Upload again to continue with the unprepared data, or tidy the file by hand."
    },
    ErrorCodes.AI_UNAVAILABLE: {
        "message": "The AI assistant is not available",
        "detail": "No AI provider is configured for this server.",
        "suggestion": "Set GROQ_API_KEY or GEMINI_API_KEY and restart the server."
    },
    ErrorCodes.RATE_LIMIT_EXCEEDED: {
        "message": "Slow down a bit",
        "detail": "You're sending requests faster than we can keep up with.",
        "suggestion": "Wait about a minute and try again. Your session will still be there."
    },
    ErrorCodes.TIMEOUT: {
        "message": "This is taking longer than expected",
        "detail": "The request did not finish in time. Large files and long AI plans take longer.",
        "suggestion": "Try a smaller sample of your data, or ask for fewer changes at once."
    },
    ErrorCodes.UNKNOWN_ERROR: {
        "message": "Something unexpected happened",
        "detail": "We encountered an issue we weren't expecting.",
        "suggestion": "Give it another try in a moment."
    }
}


def get_error_response(error_code: str, additional_detail: Optional[str] = None) -> Dict[str, str]:
    """
    Get user-friendly error response for an error code.

    Args:
        error_code: One of the ErrorCodes constants
        additional_detail: Optional additional detail to append

    Returns:
        Dictionary with code, message, detail, and suggestion
    """
    error_info = ERROR_MESSAGES.get(error_code, ERROR_MESSAGES[ErrorCodes.UNKNOWN_ERROR])

    response = {
        "code": error_code,
        "message": error_info["message"],
        "detail": error_info["detail"],
        "suggestion": error_info["suggestion"]
    }

    if additional_detail:
        response["detail"] = f"{response['detail']} {additional_detail}"

    return response
