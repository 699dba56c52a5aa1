# Middleware package init
"""
VoxNotes Backend — Middleware Package
=======================================

Middleware Chain:
    Request → [Request ID] → [Logging] → [GZip] → [CORS] → Route Handler

    Request ID runs first so the access log line (and every orchestrator
    log line) carries the correlation ID. Starlette executes middleware in
    reverse order of registration; see create_app().
"""
