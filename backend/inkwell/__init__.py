"""
Inkwell Backend: Application Package
====================================

What:  The asset upload-confirmation and OCR lifecycle service behind the
       Inkwell note-taking product.
Who:   Imported by uvicorn (`inkwell.main:app`), Alembic, and pytest.

Architecture Note:
    ┌─────────────────────────────────────┐
    │           Routes (API Layer)        │  ← HTTP concerns only
    ├─────────────────────────────────────┤
    │   AssetLifecycle (state machine)    │  ← confirm, complete, fail, sweep
    ├─────────────────────────────────────┤
    │ AssetStore │ BlobStore │ OcrDispatch│  ← persistence and collaborators
    ├─────────────────────────────────────┤
    │  Database (TransactionScope, hooks) │  ← async SQLAlchemy sessions
    └─────────────────────────────────────┘
"""

__version__ = "1.0.0"
