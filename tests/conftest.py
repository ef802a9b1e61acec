import asyncio
import uuid
from typing import Dict, Iterable, Optional

import pytest
from httpx import ASGITransport, AsyncClient

from callmonitor.domain.analysis import CRITERIA_NAMES, CallAnalysis
from callmonitor.domain.models import AudioSource, Job
from callmonitor.domain.services import job_service
from callmonitor.domain.services.scheduler import AnalysisScheduler
from callmonitor.infrastructure.persistence.in_memory_repo import InMemoryJobRepository


def analysis_payload(
    scores: Optional[Dict[str, float]] = None,
    overall: float = 7.0,
    manager: str = "Анна",
    flagged: Iterable[int] = (),
) -> dict:
    """JSON-shaped analysis as the model would return it."""
    scores = scores or {}
    flagged = set(flagged)
    lines = [
        ("Анна", "manager", "Добрый день, компания Ромашка, меня зовут Анна.", 0.0),
        ("Клиент", "client", "Здравствуйте, я по поводу абонемента.", 4.5),
        ("Анна", "manager", "Ну... эээ... да, сейчас посмотрю.", 9.2),
        ("Клиент", "client", "Спасибо, до свидания.", 75.0),
    ]
    transcription = []
    for i, (speaker, role, text, start) in enumerate(lines):
        line = {"speaker": speaker, "role": role, "text": text, "startTime": start}
        if i in flagged:
            line["error"] = {"hasError": True, "comment": "Слова-паразиты", "severity": "medium"}
        transcription.append(line)

    payload = {
        "managerName": manager,
        "clientName": "Иван",
        "overallScore": overall,
        "summary": "Вежливый звонок без закрытия сделки.",
        "transcription": transcription,
        "advice": {"overall": "Предлагайте следующий шаг.", "presentation": "Говорите о выгоде."},
    }
    for key in CRITERIA_NAMES:
        payload[key] = {"score": scores.get(key, 7), "comment": f"Комментарий по блоку {key}"}
    return payload


def make_analysis(**kwargs) -> CallAnalysis:
    return CallAnalysis.model_validate(analysis_payload(**kwargs))


class FakeAnalyzer:
    """
    Stand-in for the remote model. Latency and failures are keyed by the
    audio bytes, so each test can give its jobs distinct behaviour.
    """

    def __init__(
        self,
        delays: Optional[Dict[bytes, float]] = None,
        failures: Optional[Dict[bytes, Exception]] = None,
        default_delay: float = 0.0,
    ) -> None:
        self.delays = delays or {}
        self.failures = failures or {}
        self.default_delay = default_delay
        self.started = []
        self.finished = []
        self.active = 0
        self.max_active = 0

    async def analyze(self, source: AudioSource) -> CallAnalysis:
        self.started.append(source.data)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delays.get(source.data, self.default_delay))
            if source.data in self.failures:
                raise self.failures[source.data]
            return make_analysis()
        finally:
            self.active -= 1
            self.finished.append(source.data)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def repository():
    return InMemoryJobRepository(max_jobs=100)


@pytest.fixture
def analyzer():
    return FakeAnalyzer()


@pytest.fixture
def scheduler(repository, analyzer):
    return AnalysisScheduler(repository, analyzer, max_concurrent=2)


@pytest.fixture
def service(monkeypatch, repository, scheduler):
    """Point the job service at a fresh repository and scheduler."""
    monkeypatch.setattr(job_service, "job_repository", repository)
    monkeypatch.setattr(job_service, "scheduler", scheduler)
    return job_service


@pytest.fixture
def app(service):
    from callmonitor.main import app as fastapi_app

    return fastapi_app


@pytest.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


def make_jobs(*names: str):
    """One pending job per name; the audio bytes equal the name."""
    return [
        Job(
            id=str(uuid.uuid4()),
            name=f"{name}.mp3",
            source=AudioSource(data=name.encode(), mime_type="audio/mpeg"),
        )
        for name in names
    ]
