"""
Visa CRM - Conversion error taxonomy

Every error carries:
- code: stable machine identifier returned to the UI
- http_status: status used by the API layer
- retryable: True when the caller may safely re-run the whole conversion

A duplicate detected before commit is NOT an error: it is an "aborted"
ConversionResult carrying the match.
"""

from typing import Optional, Dict, Any


class ConversionError(Exception):
    """Base class of the conversion engine errors"""
    code = "conversion_error"
    http_status = 400
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


class ConversionValidationError(ConversionError):
    """Bad input (missing names, invalid email, unknown team member)"""
    code = "validation_error"
    http_status = 422


class EnquiryNotFoundError(ConversionError):
    code = "not_found"
    http_status = 404


class AlreadyConvertedError(ConversionError):
    code = "already_converted"
    http_status = 409

    def __init__(self, enquiry_id: str, client_id: Optional[str] = None):
        super().__init__(
            f"Enquiry {enquiry_id} is already converted",
            {"enquiry_id": enquiry_id, "client_id": client_id},
        )
        self.enquiry_id = enquiry_id
        self.client_id = client_id


class AssignmentRequiredError(ConversionError):
    code = "assignment_required"
    http_status = 422


class ConflictUnresolvedError(ConversionError):
    """The reconciler could not find the client that won the email race"""
    code = "conflict_unresolved"
    http_status = 409
    retryable = True


class TransportError(ConversionError):
    """The data store is unavailable"""
    code = "transport"
    http_status = 503
    retryable = True


class EmailConflictError(ConversionError):
    """
    Typed form of the unique-index violation on clients.email_normalized.
    Raised by the store, consumed by the orchestrator to hand off to the
    conflict reconciler. Never surfaced to the UI as such.
    """
    code = "email_conflict"
    http_status = 409
    retryable = True

    def __init__(self, email: str):
        super().__init__(f"A client already holds email {email}", {"email": email})
        self.email = email
