"""
NoteX Backend
==============

What:  Marketplace and AI study-tools API for the NoteX Telegram mini-app.
Why:   Students sell and buy study notes, run AI helpers (summaries, flashcards,
       quizzes, explanations) and pay through Stripe checkout sessions.
How:   FastAPI application over async SQLAlchemy (PostgreSQL), with Stripe for
       payments and Google Gemini for text generation.
"""

__version__ = "1.0.0"
