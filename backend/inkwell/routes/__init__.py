"""
Inkwell Backend: API Routes Package
===================================

Route Inventory:
    - assets.py:         POST   /api/assets/upload-intents
                         POST   /api/assets/{id}/confirm
                         GET    /api/assets/{id}
                         DELETE /api/assets/{id}
    - ocr_callbacks.py:  POST   /api/internal/ocr/{id}/result
                         POST   /api/internal/ocr/{id}/failure
    - health.py:         GET    /health

Routes stay thin: parse the request, call AssetLifecycle, shape the
response. Business rules live in services.
"""
