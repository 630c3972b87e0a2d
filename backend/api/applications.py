"""
Applications API - read-only view of the installed applications.

Records come from the in-memory registry; only the event list is read through
to the store.
"""

from typing import Any

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from application_registry import InstalledApplication, get_application_registry
from appdb import NotFound

router = APIRouter(prefix="/applications", tags=["applications"])


class ApplicationView(BaseModel):
    id: str
    manifest: dict[str, Any]
    path: str
    install_time: float


class EventsView(BaseModel):
    id: str
    events: list[str]


def _to_view(application: InstalledApplication) -> ApplicationView:
    return ApplicationView(
        id=application.id,
        manifest=application.manifest,
        path=application.path,
        install_time=application.install_time,
    )


@router.get("", response_model=list[ApplicationView])
async def list_applications():
    registry = get_application_registry()
    installed = registry.get_installed_applications()
    return [_to_view(installed[app_id]) for app_id in sorted(installed)]


@router.get("/{app_id}", response_model=ApplicationView)
async def get_application(app_id: str):
    application = get_application_registry().get_application_by_id(app_id)
    if application is None:
        raise HTTPException(status_code=404, detail=f"Application not found: {app_id}")
    return _to_view(application)


@router.get("/{app_id}/events", response_model=EventsView)
async def get_application_events(app_id: str):
    try:
        events = await get_application_registry().get_events(app_id)
    except NotFound:
        raise HTTPException(status_code=404, detail=f"Application not found: {app_id}")
    return EventsView(id=app_id, events=events)
