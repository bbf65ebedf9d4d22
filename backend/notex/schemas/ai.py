"""
NoteX Backend — AI Tool Request Schemas
=========================================
"""

from typing import Optional

from pydantic import BaseModel


class TextRequest(BaseModel):
    # Length limits are checked by AIJobRunner
    text: Optional[str] = None


class CountedTextRequest(TextRequest):
    count: int = 5


class ExplainRequest(BaseModel):
    text: Optional[str] = None
    question: Optional[str] = None
