"""
Structured call analysis returned by the model.

Field names mirror the JSON the model is asked to produce, so the payload can be
validated as-is and forwarded to the front end unchanged.
"""
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class SectionScore(BaseModel):
    score: float = Field(ge=0, le=10)
    comment: str


class ErrorAnalysis(BaseModel):
    hasError: bool
    comment: str
    severity: Literal["low", "medium", "high"]


class TranscriptionLine(BaseModel):
    speaker: str
    role: Literal["manager", "client", "other"]
    text: str
    startTime: float = Field(ge=0)  # seconds from the start of the recording
    error: Optional[ErrorAnalysis] = None


class CallAdvice(BaseModel):
    overall: str
    greeting: Optional[str] = None
    joining: Optional[str] = None
    presentation: Optional[str] = None
    referAFriend: Optional[str] = None
    consolidation: Optional[str] = None
    disconnection: Optional[str] = None


class CallAnalysis(BaseModel):
    managerName: str
    clientName: str
    greeting: SectionScore
    joining: SectionScore
    presentation: SectionScore
    referAFriend: SectionScore
    consolidation: SectionScore
    disconnection: SectionScore
    overallScore: float
    summary: str
    transcription: List[TranscriptionLine] = []
    advice: CallAdvice

    def section(self, key: str) -> SectionScore:
        if key not in CRITERIA_NAMES:
            raise KeyError(key)
        return getattr(self, key)

    def flagged_lines(self) -> List[tuple]:
        """(index, line) pairs for transcript lines the model marked as errors."""
        return [
            (index, line)
            for index, line in enumerate(self.transcription)
            if line.error is not None and line.error.hasError
        ]


# Sales-call stages, in display order
CRITERIA_NAMES: Dict[str, str] = {
    "greeting": "Приветствие",
    "joining": "Присоединение",
    "presentation": "Презентация",
    "referAFriend": "Приведи друга",
    "consolidation": "Закрепление",
    "disconnection": "Отсоединение",
}


def score_band(score: float) -> str:
    """Colour band used by the dashboard: good (>= 8), fair (>= 5) or poor."""
    if score >= 8:
        return "good"
    if score >= 5:
        return "fair"
    return "poor"


def format_time(seconds: float) -> str:
    """Format a transcript offset as m:ss."""
    if not seconds or seconds < 0:
        return "0:00"
    minutes = int(seconds // 60)
    secs = int(seconds % 60)
    return f"{minutes}:{secs:02d}"
