# Services package init
"""
NoteX Backend — Services Layer
================================

Service Inventory:
    - LLMService (abstract) / GeminiService: text generation with retry and
      circuit breaker
    - StripeGateway: Stripe checkout sessions and webhook verification
    - FileService: note file validation, storage, resolution and cleanup
    - AuthService: Telegram initData login and bearer sessions
    - LedgerService: credits, rewarded ads, referrals, payouts
    - CatalogService: marketplace listing, upload, download, reviews
    - CheckoutService: fee split and checkout/subscription sessions
    - WebhookReconciler: idempotent application of Stripe events
    - AIJobRunner: summaries, flashcards, quizzes, explanations
    - UserService: dashboard, profile, referral list

Services never commit; the request's session_scope() does, so every
multi-step change is all-or-nothing.
"""
