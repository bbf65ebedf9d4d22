# Routes package init
"""
NoteX Backend — API Routes Package
====================================

Route Inventory:
    - auth.py:       POST /api/auth/telegram-login, POST /api/auth/logout
    - ai.py:         POST /api/ai/{summarize,flashcards,quiz,explain}
    - notes.py:      GET  /api/notes, GET /api/notes/{id}, POST /api/notes/upload,
                     GET  /api/notes/{id}/download, GET /api/notes/seller/my-notes,
                     POST /api/notes/{id}/reviews
    - purchases.py:  POST /api/purchases/create-checkout, /create-subscription,
                     GET  /api/purchases/my-purchases, /verify/{session_id}, /stats
    - users.py:      GET  /api/users/dashboard, GET|PUT /api/users/profile,
                     POST /api/users/add-credits, /request-payout,
                     GET  /api/users/referrals
    - referrals.py:  POST /api/referrals/apply, GET /api/referrals/stats, /link
    - webhooks.py:   POST /webhooks/stripe (raw body, signature verified)
    - health.py:     GET  /health
    - admin.py:      POST /internal/payouts/{id}/fail (X-Admin-Key)

Routes are thin: they extract request data, call a service built by
notex.dependencies, and shape the JSON response. Business rules live in
the services.
"""
