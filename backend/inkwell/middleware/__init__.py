"""
Inkwell Backend: Middleware Package
===================================

What:  Request ID and access logging wrappers around every route.
Why:   Cross-cutting concerns stay out of the route handlers.

Middleware Chain:
    Request → [Request ID] → [Logging] → [CORS] → Route Handler

    1. Request ID: correlation ID for logs and error bodies
    2. Logging: access line with status and duration
    3. CORS: FastAPI's CORSMiddleware (handles preflight)
"""
