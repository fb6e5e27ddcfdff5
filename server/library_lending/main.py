"""
Library Lending API - FastAPI Backend
=====================================

Records book loans and only releases a book when the person returning it
matches, by face, the person who borrowed it.

Endpoints:
- POST   /borrow            - Record a loan with the borrower's face capture
- POST   /borrow-record     - Current (active) loan for a student and book
- POST   /verify            - Compare a live capture with the loan (dry run)
- POST   /return            - Verify and mark the loan returned
- POST   /detect-face       - Quick "is a face visible" check for the camera UI
- GET    /borrowed          - Active loans, by class then newest first
- GET    /borrowed/by-class - Active loans grouped by class
- DELETE /clear-all         - Delete every record (administrative reset)
- GET    /health            - Store readiness and active loan count
"""

import logging
from contextlib import asynccontextmanager
from typing import List, Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from library_lending import __version__
from library_lending.coordinator import BorrowReturnCoordinator, ReturnAttempt
from library_lending.database import LendingRecordStore
from library_lending.errors import (
    ErrorCode, LendingError, ModelLoadError, PersistenceError, ServiceUnavailable, ValidationError
)
from library_lending.face_utils import DescriptorExtractor, FaceDetectionEngine, SimilarityScorer
from library_lending.models import (
    BorrowRecordResponse, BorrowRequest, ClassGroup, ClearResponse, DetectFaceRequest,
    DetectFaceResponse, ErrorResponse, HealthResponse, LoanLookupRequest, ReturnRequest,
    VerificationResponse, VerifyRequest
)
from library_lending.settings import Settings, get_settings
from library_lending.verification import Decision, VerificationPolicy
from library_lending.weights import ModelRegistry, default_sources

logger = logging.getLogger(__name__)

router = APIRouter()


# ============================================================================
# Dependencies
# ============================================================================

def get_store(request: Request) -> LendingRecordStore:
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise ServiceUnavailable("Database not initialized. Please wait a moment and try again.")
    return store


def get_coordinator(request: Request) -> BorrowReturnCoordinator:
    coordinator = getattr(request.app.state, "coordinator", None)
    if coordinator is None:
        raise ServiceUnavailable("Service is still starting. Please wait a moment and try again.")
    return coordinator


def _outcome_error(attempt: ReturnAttempt, status_code: int, error_code: str) -> JSONResponse:
    outcome = attempt.outcome
    error = ErrorResponse(
        error_code=error_code,
        message=outcome.message,
        details={
            "decision": outcome.decision.value,
            "similarity": outcome.similarity,
            "similarity_percent": outcome.similarity_percent,
            "threshold": outcome.threshold,
            "attempts": outcome.attempts,
            "record_id": attempt.record.id,
        },
    )
    return JSONResponse(status_code=status_code, content=error.model_dump())


# ============================================================================
# Health & Info Endpoints
# ============================================================================

@router.get("/", tags=["Info"])
async def root(request: Request):
    """Root endpoint with API information."""
    return {
        "name": "Library Lending API",
        "version": __version__,
        "database_ready": getattr(request.app.state, "store", None) is not None,
        "endpoints": {
            "POST /borrow": "Borrow a book",
            "POST /borrow-record": "Get the active borrow record for face comparison",
            "POST /verify": "Compare a live capture with the borrow record",
            "POST /return": "Return a book (face verified)",
            "POST /detect-face": "Check whether a face is visible in an image",
            "GET /borrowed": "List all borrowed books",
            "GET /borrowed/by-class": "List borrowed books grouped by class",
            "DELETE /clear-all": "Clear all borrowed books (reset database)",
            "GET /health": "Check API and database status",
        },
    }


@router.get("/health", response_model=HealthResponse, tags=["Info"])
def health_check(request: Request):
    """Store readiness and number of active loans."""
    registry = getattr(request.app.state, "registry", None)
    models_loaded = registry is not None and registry.is_loaded
    store = getattr(request.app.state, "store", None)

    if store is None:
        health = HealthResponse(
            status="error", database="not initialized", version=__version__, models_loaded=models_loaded
        )
        return JSONResponse(status_code=503, content=health.model_dump())

    try:
        count = store.count_active()
    except PersistenceError as e:
        logger.error("Health check query failed: %s", e.message)
        health = HealthResponse(
            status="error", database="error", version=__version__, models_loaded=models_loaded
        )
        return JSONResponse(status_code=503, content=health.model_dump())

    return HealthResponse(
        status="ok",
        database="ready",
        version=__version__,
        active_borrows=count,
        models_loaded=models_loaded,
    )


# ============================================================================
# Borrow / Return Endpoints
# ============================================================================

@router.post(
    "/borrow",
    status_code=201,
    response_model=BorrowRecordResponse,
    responses={400: {"model": ErrorResponse}},
    tags=["Lending"],
)
def borrow_book(body: BorrowRequest, coordinator: BorrowReturnCoordinator = Depends(get_coordinator)):
    """Record a new loan. The face image becomes the reference for the return."""
    record = coordinator.borrow(body.student_id, body.student_class, body.book_code, body.image)
    return BorrowRecordResponse.from_record(record)


@router.post(
    "/borrow-record",
    response_model=BorrowRecordResponse,
    responses={404: {"model": ErrorResponse}},
    tags=["Lending"],
)
def get_borrow_record(body: LoanLookupRequest, store: LendingRecordStore = Depends(get_store)):
    """Most recent active loan for the student and book, including the reference image."""
    record = store.find_active_loan(body.student_id, body.book_code)
    return BorrowRecordResponse.from_record(record)


@router.post(
    "/verify",
    response_model=VerificationResponse,
    responses={404: {"model": ErrorResponse}},
    tags=["Lending"],
)
def verify_face(body: VerifyRequest, coordinator: BorrowReturnCoordinator = Depends(get_coordinator)):
    """Compare a live capture with the loan's reference image without returning the book."""
    attempt = coordinator.verify(body.student_id, body.book_code, body.image)
    return VerificationResponse.from_attempt(attempt)


@router.post(
    "/return",
    response_model=VerificationResponse,
    responses={
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
    tags=["Lending"],
)
def return_book(body: ReturnRequest, coordinator: BorrowReturnCoordinator = Depends(get_coordinator)):
    """
    Return a book after face verification.

    - similarity >= threshold: book is returned (200)
    - similarity < threshold: 403 FACE_MISMATCH, record untouched
    - no face found after retries: 409 NEEDS_MANUAL_REVIEW; resend with
      `manualOverride: true` once an operator has checked the student
    """
    attempt = coordinator.return_book(
        body.student_id, body.book_code, body.image, manual_override=body.manual_override
    )

    if attempt.returned:
        return VerificationResponse.from_attempt(attempt)
    if attempt.decision == Decision.REJECTED:
        return _outcome_error(attempt, 403, ErrorCode.FACE_MISMATCH)
    return _outcome_error(attempt, 409, ErrorCode.NEEDS_MANUAL_REVIEW)


@router.post("/detect-face", response_model=DetectFaceResponse, tags=["Lending"])
def detect_face(body: DetectFaceRequest, coordinator: BorrowReturnCoordinator = Depends(get_coordinator)):
    """Real-time feedback for the capture screen (fast detector only)."""
    if not body.image:
        raise ValidationError("Image is required.")
    return DetectFaceResponse(face_detected=coordinator.extractor.has_face(body.image))


# ============================================================================
# Listing & Administration
# ============================================================================

@router.get("/borrowed", response_model=List[BorrowRecordResponse], tags=["Lending"])
def list_borrowed(
    student: Optional[str] = Query(None, description="Student ID contains (case-insensitive)"),
    book: Optional[str] = Query(None, description="Book code contains (case-insensitive)"),
    include_image: bool = Query(True, alias="includeImage"),
    store: LendingRecordStore = Depends(get_store),
):
    """All active loans, ordered by class then most recent borrow first."""
    records = store.list_active(student=student, book=book)
    logger.debug("Returning %d borrowed books", len(records))
    return [BorrowRecordResponse.from_record(r, include_image=include_image) for r in records]


@router.get("/borrowed/by-class", response_model=List[ClassGroup], tags=["Lending"])
def list_borrowed_by_class(
    student: Optional[str] = Query(None),
    book: Optional[str] = Query(None),
    include_image: bool = Query(True, alias="includeImage"),
    store: LendingRecordStore = Depends(get_store),
):
    grouped = store.group_active_by_class(student=student, book=book)
    return [
        ClassGroup(
            student_class=student_class,
            count=len(records),
            records=[BorrowRecordResponse.from_record(r, include_image=include_image) for r in records],
        )
        for student_class, records in grouped.items()
    ]


@router.delete("/clear-all", response_model=ClearResponse, tags=["Administration"])
def clear_all(store: LendingRecordStore = Depends(get_store)):
    """Irreversibly delete every borrow record."""
    deleted = store.clear_all()
    return ClearResponse(message="All borrowed books have been cleared successfully.", count=deleted)


# ============================================================================
# Error Handlers
# ============================================================================

async def lending_error_handler(request: Request, exc: LendingError):
    error = ErrorResponse(error_code=exc.error_code, message=exc.message, details=exc.details)
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(error))


async def request_validation_handler(request: Request, exc: RequestValidationError):
    error = ErrorResponse(
        error_code=ErrorCode.VALIDATION_ERROR,
        message="Invalid request body.",
        details={"errors": jsonable_encoder(exc.errors())},
    )
    return JSONResponse(status_code=400, content=jsonable_encoder(error))


# ============================================================================
# Application Setup
# ============================================================================

def create_app(
    settings: Optional[Settings] = None,
    registry: Optional[ModelRegistry] = None,
    extractor: Optional[DescriptorExtractor] = None,
) -> FastAPI:
    """
    Build the API. The store, model registry and coordinator are created in
    the lifespan and live on `app.state` for the lifetime of the app.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Library lending API starting up (database: %s)", settings.database_url)

        model_registry = registry or ModelRegistry(default_sources(settings.face_models_dir))
        app.state.registry = model_registry
        if settings.preload_models:
            try:
                model_registry.get()
            except ModelLoadError as e:
                logger.critical("Cannot start without face models: %s", e.message)
                raise

        store = LendingRecordStore(
            settings.database_url,
            student_classes=settings.student_classes,
            max_image_chars=settings.max_image_chars,
        )
        store.init_db()

        face_extractor = extractor or DescriptorExtractor(
            FaceDetectionEngine(model_registry), num_jitters=settings.face_num_jitters
        )
        app.state.coordinator = BorrowReturnCoordinator(
            store,
            face_extractor,
            scorer=SimilarityScorer(settings.max_descriptor_distance),
            policy=VerificationPolicy(settings.similarity_threshold),
            max_retries=settings.extraction_retries,
            retry_delay=settings.extraction_retry_delay,
        )
        app.state.store = store
        logger.info("Database initialized")

        yield

        logger.info("Library lending API shutting down")
        app.state.store = None
        app.state.coordinator = None
        store.dispose()

    app = FastAPI(
        title="Library Lending API",
        description="Book borrowing with face-verified returns.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.store = None
    app.state.coordinator = None
    app.state.registry = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(LendingError, lending_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.include_router(router)
    return app


app = create_app()


def run():
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run("library_lending.main:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
