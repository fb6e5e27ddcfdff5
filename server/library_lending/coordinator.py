"""
Borrow / return orchestration.

The coordinator is the only component that talks to both the record store
and the face pipeline. A return goes:

    find active loan -> decode both images -> extract descriptors (retried)
    -> score -> decide -> complete the return only when the decision allows it

Rejections and manual-review outcomes are returned as values; the caller
(HTTP layer) decides how to present them.
"""

import logging
import time
from typing import Callable, Optional, Tuple

import numpy as np

from library_lending.database import BorrowRecord, LendingRecordStore
from library_lending.errors import InvalidImageError, InvalidStateError, NoFaceDetected, ValidationError
from library_lending.face_utils import DescriptorExtractor, SimilarityScorer
from library_lending.image_processor import ImageInput, calculate_image_hash, load_image
from library_lending.verification import Decision, VerificationOutcome, VerificationPolicy

logger = logging.getLogger(__name__)


class ReturnAttempt:
    """Outcome of a verification, plus the loan it was checked against."""

    def __init__(self, record: BorrowRecord, outcome: VerificationOutcome, returned: bool = False):
        self.record = record
        self.outcome = outcome
        self.returned = returned

    @property
    def decision(self) -> Decision:
        return self.outcome.decision


class BorrowReturnCoordinator:

    def __init__(
        self,
        store: LendingRecordStore,
        extractor: DescriptorExtractor,
        scorer: Optional[SimilarityScorer] = None,
        policy: Optional[VerificationPolicy] = None,
        max_retries: int = 2,
        retry_delay: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.extractor = extractor
        self.scorer = scorer or SimilarityScorer()
        self.policy = policy or VerificationPolicy()
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._sleep = sleep

    def borrow(self, student_id: str, student_class: str, book_code: str, image: str) -> BorrowRecord:
        return self.store.create_loan(student_id, student_class, book_code, image)

    def _decode_pair(self, record: BorrowRecord, live_image: ImageInput) -> Tuple[np.ndarray, np.ndarray]:
        try:
            reference = load_image(record.image)
        except InvalidImageError as e:
            raise InvalidStateError(
                f"Reference image of borrow record {record.id} cannot be decoded.",
                details={"reason": e.message},
            )
        return reference, load_image(live_image)

    def verify(self, student_id: str, book_code: str, live_image: ImageInput) -> ReturnAttempt:
        """
        Compare the live capture with the loan's reference image. Read-only.

        Both images are decoded once up front; an undecodable capture is an
        InvalidImageError (400) and never reaches the retry loop. Only
        NoFaceDetected is retried, a low similarity is final, and
        ModelLoadError propagates.
        """
        record = self.store.find_active_loan(student_id, book_code)
        if live_image is None or (isinstance(live_image, (str, bytes)) and not live_image):
            raise ValidationError("Please capture a face image to verify identity.")
        reference_pixels, live_pixels = self._decode_pair(record, live_image)

        total_attempts = self.max_retries + 1
        last_error: Optional[NoFaceDetected] = None
        for attempt in range(1, total_attempts + 1):
            try:
                reference = self.extractor.extract(reference_pixels)
                live = self.extractor.extract(live_pixels)
            except NoFaceDetected as e:
                last_error = e
                logger.warning(
                    "Descriptor extraction failed for record %s (attempt %d/%d): %s",
                    record.id, attempt, total_attempts, e.message,
                )
                if attempt < total_attempts:
                    self._sleep(self.retry_delay)
                continue

            similarity = self.scorer.score(reference, live)
            outcome = self.policy.decide(similarity, attempts=attempt)
            logger.info(
                "Face comparison for record %s: similarity=%.3f decision=%s",
                record.id, similarity, outcome.decision.value,
            )
            return ReturnAttempt(record, outcome)

        outcome = self.policy.decide(
            None,
            attempts_exhausted=True,
            attempts=total_attempts,
            failure=last_error.message if last_error else None,
        )
        return ReturnAttempt(record, outcome)

    def return_book(
        self,
        student_id: str,
        book_code: str,
        live_image: ImageInput,
        manual_override: bool = False,
    ) -> ReturnAttempt:
        """
        Verify and, when allowed, mark the loan returned.

        `manual_override` only applies to NEEDS_MANUAL_REVIEW; the return is
        then recorded with similarity 0 and flagged unverified. The audit
        row is committed in the same transaction as the return, so a failed
        transition leaves no audit entry claiming success.
        """
        attempt = self.verify(student_id, book_code, live_image)
        outcome = attempt.outcome
        overriding = manual_override and outcome.decision == Decision.NEEDS_MANUAL_REVIEW
        image_hash = calculate_image_hash(live_image) if isinstance(live_image, (str, bytes)) else None
        audit = self.store.build_attempt(
            attempt.record.id, outcome, manual_override=overriding, image_hash=image_hash
        )

        if outcome.decision == Decision.VERIFIED:
            attempt.record = self.store.complete_return(
                attempt.record.id, similarity=outcome.similarity, verified=True, audit=audit
            )
            attempt.returned = True
        elif overriding:
            logger.warning(
                "Manual override: record %s returned without face verification", attempt.record.id
            )
            attempt.record = self.store.complete_return(
                attempt.record.id, similarity=0.0, verified=False, audit=audit
            )
            attempt.returned = True
        else:
            self.store.save_attempt(audit)
            logger.info(
                "Return not completed for record %s: %s", attempt.record.id, outcome.message
            )

        return attempt
