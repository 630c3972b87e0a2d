from typing import Dict, List

from fastapi import FastAPI
from fastapi.testclient import TestClient

from api import applications as applications_api
from application_registry import InstalledApplication
from appdb import NotFound


class _StubRegistry:
    def __init__(self) -> None:
        self._applications: Dict[str, InstalledApplication] = {
            "beta": InstalledApplication("beta", {"name": "Beta"}, "/apps/beta", 2.0),
            "alpha": InstalledApplication("alpha", {"name": "Alpha"}, "/apps/alpha", 1.0),
        }
        self._events: Dict[str, List[str]] = {"alpha": ["onLaunched"]}

    def get_installed_applications(self) -> Dict[str, InstalledApplication]:
        return dict(self._applications)

    def get_application_by_id(self, app_id: str):
        return self._applications.get(app_id)

    async def get_events(self, app_id: str) -> List[str]:
        if app_id not in self._applications:
            raise NotFound(app_id)
        return self._events.get(app_id, [])


def _build_client(monkeypatch) -> TestClient:
    registry = _StubRegistry()
    monkeypatch.setattr(applications_api, "get_application_registry", lambda: registry)
    app = FastAPI()
    app.include_router(applications_api.router)
    return TestClient(app)


def test_list_applications_is_sorted_by_id(monkeypatch) -> None:
    with _build_client(monkeypatch) as client:
        response = client.get("/applications")
    assert response.status_code == 200
    assert [item["id"] for item in response.json()] == ["alpha", "beta"]


def test_get_application_returns_record(monkeypatch) -> None:
    with _build_client(monkeypatch) as client:
        response = client.get("/applications/beta")
    assert response.status_code == 200
    assert response.json() == {
        "id": "beta",
        "manifest": {"name": "Beta"},
        "path": "/apps/beta",
        "install_time": 2.0,
    }


def test_get_unknown_application_is_404(monkeypatch) -> None:
    with _build_client(monkeypatch) as client:
        response = client.get("/applications/ghost")
        events_response = client.get("/applications/ghost/events")
    assert response.status_code == 404
    assert events_response.status_code == 404


def test_get_application_events(monkeypatch) -> None:
    with _build_client(monkeypatch) as client:
        alpha = client.get("/applications/alpha/events")
        beta = client.get("/applications/beta/events")
    assert alpha.json() == {"id": "alpha", "events": ["onLaunched"]}
    assert beta.json() == {"id": "beta", "events": []}
