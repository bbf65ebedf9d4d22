# Middleware package init
"""
NoteX Backend — Middleware Package
====================================

Middleware Chain (order matters!):
    Request → [Request ID] → [Rate Limit] → [Logging] → [GZip] → [CORS] → Route

    1. Request ID first: every response, a 429 included, carries the ID
    2. Rate Limit: rejects abusive /api/ traffic before any work
    3. Logging: one access line per request with status and duration
"""
