"""
Library Lending - Face-Verified Book Returns
===========================================

Records book loans with a face capture of the borrower, and only marks a
book returned when a live capture matches that reference.

Components:
- weights.py: lazily loaded, process-wide dlib model weights
- face_utils.py: detection fallback chain, 128-dim descriptors, similarity
- verification.py: Verified / Rejected / NeedsManualReview decision rules
- database.py: SQLite lending record store (Active -> Returned)
- coordinator.py: borrow / return orchestration
- image_processor.py: base64 / data URL image decoding
- models.py: Pydantic request/response models
- main.py: FastAPI application
"""

__version__ = "1.0.0"
