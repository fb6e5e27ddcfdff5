"""Return verification decision rules."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class Decision(str, Enum):
    VERIFIED = "verified"
    REJECTED = "rejected"
    # Biometric path unusable (no face found repeatedly); a human decides
    NEEDS_MANUAL_REVIEW = "needs_manual_review"


class VerificationOutcome(BaseModel):
    decision: Decision
    similarity: Optional[float] = Field(None, ge=0.0, le=1.0)
    threshold: float
    attempts: int = 1
    message: str

    @property
    def similarity_percent(self) -> Optional[int]:
        if self.similarity is None:
            return None
        return int(round(self.similarity * 100))


class VerificationPolicy:
    """
    Turns a similarity score into a decision.

    similarity >= threshold -> VERIFIED, otherwise REJECTED. When descriptor
    extraction failed on every attempt there is no score at all, and the
    outcome is NEEDS_MANUAL_REVIEW instead of a rejection.
    """

    DEFAULT_THRESHOLD = 0.5

    def __init__(self, threshold: float = DEFAULT_THRESHOLD):
        if not 0.0 <= threshold <= 1.0:
            raise ValueError("threshold must be within [0, 1]")
        self.threshold = threshold

    @property
    def threshold_percent(self) -> int:
        return int(round(self.threshold * 100))

    def decide(
        self,
        similarity: Optional[float],
        attempts_exhausted: bool = False,
        attempts: int = 1,
        failure: Optional[str] = None,
    ) -> VerificationOutcome:
        if attempts_exhausted:
            reason = f": {failure}" if failure else ""
            return VerificationOutcome(
                decision=Decision.NEEDS_MANUAL_REVIEW,
                similarity=None,
                threshold=self.threshold,
                attempts=attempts,
                message=(
                    f"Face detection failed after {attempts} attempts{reason}. "
                    "The return must be verified manually."
                ),
            )

        if similarity is None:
            raise ValueError("similarity is required unless attempts are exhausted")

        percent = int(round(similarity * 100))
        if similarity >= self.threshold:
            return VerificationOutcome(
                decision=Decision.VERIFIED,
                similarity=similarity,
                threshold=self.threshold,
                attempts=attempts,
                message=f"Face match verified. Similarity: {percent}%",
            )

        return VerificationOutcome(
            decision=Decision.REJECTED,
            similarity=similarity,
            threshold=self.threshold,
            attempts=attempts,
            message=(
                f"Face match failed. Similarity: {percent}% "
                f"(Required: {self.threshold_percent}%)"
            ),
        )
