"""
Pydantic Models for API Request/Response Validation

Request bodies use the camelCase keys the borrow/return kiosk sends;
responses use the record column names.
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from library_lending.coordinator import ReturnAttempt
from library_lending.database import BorrowRecord
from library_lending.verification import Decision


class _RequestModel(BaseModel):
    # Fields are optional so a missing field is reported by the store as a
    # ValidationError (400) with the same message for every client.
    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)


# ============================================================================
# Request Models
# ============================================================================

class BorrowRequest(_RequestModel):
    student_id: Optional[str] = Field(None, alias="studentId")
    student_class: Optional[str] = Field(None, alias="studentClass", description="One of the configured classes, e.g. P5")
    book_code: Optional[str] = Field(None, alias="bookCode")
    image: Optional[str] = Field(None, description="Base64 data URL of the borrower's face")

    model_config = ConfigDict(
        populate_by_name=True,
        coerce_numbers_to_str=True,
        json_schema_extra={
            "example": {
                "studentId": "S123",
                "studentClass": "P5",
                "bookCode": "BK001",
                "image": "data:image/jpeg;base64,...",
            }
        },
    )


class LoanLookupRequest(_RequestModel):
    student_id: Optional[str] = Field(None, alias="studentId")
    book_code: Optional[str] = Field(None, alias="bookCode")


class VerifyRequest(LoanLookupRequest):
    image: Optional[str] = Field(None, description="Base64 data URL of the live capture")


class ReturnRequest(VerifyRequest):
    manual_override: bool = Field(
        False,
        alias="manualOverride",
        description="Operator approval to return without a face match when detection keeps failing",
    )


class DetectFaceRequest(_RequestModel):
    image: Optional[str] = None


# ============================================================================
# Response Models
# ============================================================================

class BorrowRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    student_id: str
    student_class: str
    book_code: str
    borrow_date: datetime
    return_date: Optional[datetime] = None
    state: str
    returned: bool
    image: Optional[str] = None
    return_similarity: Optional[float] = None
    return_verified: Optional[bool] = None

    @classmethod
    def from_record(cls, record: BorrowRecord, include_image: bool = True) -> "BorrowRecordResponse":
        response = cls.model_validate(record)
        if not include_image:
            response.image = None
        return response


class ClassGroup(BaseModel):
    student_class: str
    count: int
    records: List[BorrowRecordResponse]


class VerificationResponse(BaseModel):
    """Outcome of a face comparison; `record` is set when a return happened."""
    decision: Decision
    similarity: Optional[float] = None
    similarity_percent: Optional[int] = None
    threshold: float
    attempts: int
    message: str
    returned: bool = False
    record: Optional[BorrowRecordResponse] = None

    @classmethod
    def from_attempt(cls, attempt: ReturnAttempt, include_record: bool = True) -> "VerificationResponse":
        outcome = attempt.outcome
        return cls(
            decision=outcome.decision,
            similarity=outcome.similarity,
            similarity_percent=outcome.similarity_percent,
            threshold=outcome.threshold,
            attempts=outcome.attempts,
            message=outcome.message,
            returned=attempt.returned,
            record=BorrowRecordResponse.from_record(attempt.record, include_image=False) if include_record else None,
        )


class DetectFaceResponse(BaseModel):
    face_detected: bool


class ClearResponse(BaseModel):
    message: str
    count: int = 0


class HealthResponse(BaseModel):
    status: str = Field(..., examples=["ok"])
    database: str = Field(..., examples=["ready"])
    version: str
    active_borrows: Optional[int] = None
    models_loaded: bool = False


# ============================================================================
# Error Models
# ============================================================================

class ErrorResponse(BaseModel):
    """Standard error response."""
    status: Literal["error"] = "error"
    error_code: str
    message: str
    details: Optional[dict] = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "status": "error",
                "error_code": "FACE_MISMATCH",
                "message": "Face match failed. Similarity: 31% (Required: 50%)",
                "details": {"similarity_percent": 31},
            }
        }
    )
