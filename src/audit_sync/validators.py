"""
Input validation for incoming sync records.

Validators return ``(is_valid, reason)`` tuples so the reconciliation
service can skip a single bad record and keep processing the batch.
"""

DRAFT_ID = "draft"
MAX_ID_LENGTH = 191


def format_validation_error(field_name: str, reason: str) -> str:
    """
    Generate consistent error message for validation failures.

    Args:
        field_name: Human-readable field name (e.g., "Audit id")
        reason: Description of validation failure (e.g., "cannot be empty")

    Returns:
        Formatted error message string
    """
    return f"{field_name} {reason}"


def is_syncable_id(audit_id: str | None) -> bool:
    """Return True for a non-empty audit id that is not the draft sentinel."""
    return bool(audit_id) and audit_id != DRAFT_ID


def validate_audit_id(audit_id: str | None) -> tuple[bool, str]:
    """
    Validate an audit id for synchronisation.

    Returns:
        Tuple of (is_valid, error_message).

    Validation rules:
        - Cannot be empty or whitespace-only
        - Cannot be the reserved ``draft`` sentinel
        - Cannot exceed MAX_ID_LENGTH characters
    """
    if not audit_id or not str(audit_id).strip():
        return (False, format_validation_error("Audit id", "cannot be empty"))

    if audit_id == DRAFT_ID:
        return (
            False,
            format_validation_error(
                "Audit id", "is the draft sentinel and cannot be synced"
            ),
        )

    if len(audit_id) > MAX_ID_LENGTH:
        return (
            False,
            format_validation_error(
                "Audit id", f"exceeds {MAX_ID_LENGTH} characters"
            ),
        )

    return (True, "")


def validate_criterion_id(criterion_id: str | None) -> tuple[bool, str]:
    """
    Validate the criterion id of an incoming answer.

    Returns:
        Tuple of (is_valid, error_message).
    """
    if not criterion_id or not str(criterion_id).strip():
        return (
            False,
            format_validation_error("Criterion id", "cannot be empty"),
        )

    if len(criterion_id) > MAX_ID_LENGTH:
        return (
            False,
            format_validation_error(
                "Criterion id", f"exceeds {MAX_ID_LENGTH} characters"
            ),
        )

    return (True, "")
