# Routes package init
"""
VoxNotes Backend — API Routes Package
=======================================

Route Inventory:
    - process.py: POST /api/process          (process one note, X-User-ID)
                  POST /api/process/batch    (cron: next batch, bearer CRON_SECRET)
                  POST /api/process/reset    (cron: stuck-job sweep)
                  GET  /api/process/stats    (caller's status counts + quota)
    - notes.py:   GET  /api/notes/{id}/status
    - health.py:  GET  /health

Routes stay thin: they resolve the caller, call the orchestrator from
`app.state`, and map result variants to status codes.
"""
