"""
Inkwell Backend: Services Layer
===============================

What:  Business logic between routes (HTTP) and the database.

Service Inventory:
    - AssetStore: conditional updates and sweep queries over `assets`
    - BlobStore / LocalBlobStore: blob existence checks and deletion
    - OcrDispatcher / HttpOcrDispatcher: delivers jobs to the OCR worker
    - OcrDispatchPool: bounded queue + worker tasks in front of the dispatcher
    - UploadPolicy: MIME, size, name, ownership and quota checks
    - AssetLifecycle: the asset state machine
    - ReconciliationScheduler: periodic timeout and intent-expiry sweep
"""
