from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import httpx
import pytest


class FakeClock:
    def __init__(self, start_ms: float = 1_000_000.0) -> None:
        self.now_ms = start_ms

    def __call__(self) -> float:
        return self.now_ms

    def advance(self, ms: float) -> None:
        self.now_ms += ms


def make_indeed_item(job_key: str | None = "job-1", **overrides: Any) -> dict[str, Any]:
    item: dict[str, Any] = {
        "title": "Growth Marketing Manager",
        "companyName": "Acme Corp",
        "companyUrl": "https://acme.example.com",
        "location": {"formattedAddressShort": "Remote", "city": "Austin"},
        "isRemote": True,
        "jobType": ["Full-time"],
        "salary": {
            "salaryMin": 90000.4,
            "salaryMax": 120000,
            "salaryCurrency": "USD",
            "salaryText": "$90,000 - $120,000 a year",
        },
        "descriptionText": "Own the growth funnel.",
        "jobUrl": f"https://www.indeed.com/viewjob?jk={job_key}",
        "applyUrl": f"https://acme.example.com/apply/{job_key}",
        "datePublished": "2026-10-15T08:30:00Z",
        "occupation": ["Marketing"],
        "attributes": ["SEO", "Lifecycle"],
    }
    if job_key is not None:
        item["jobKey"] = job_key
    item.update(overrides)
    return item


class ApifyStub:
    """Records actor calls and answers them from a queue of canned responses."""

    def __init__(self) -> None:
        self.requests: list[dict[str, Any]] = []
        self.responses: list[httpx.Response | Callable[[httpx.Request], httpx.Response]] = []

    def reply(self, payload: Any, status_code: int = 200) -> None:
        self.responses.append(httpx.Response(status_code, json=payload))

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(
            {
                "url": str(request.url),
                "body": json.loads(request.content or b"{}"),
            }
        )
        if not self.responses:
            return httpx.Response(200, json=[])
        response = self.responses.pop(0)
        if callable(response):
            return response(request)
        return response

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def indeed_item() -> Callable[..., dict[str, Any]]:
    return make_indeed_item


@pytest.fixture
def apify() -> ApifyStub:
    return ApifyStub()
