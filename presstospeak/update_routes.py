from typing import Optional

from fastapi import APIRouter, Depends, Request, Response

from .dependencies import Services, get_services, require_proxy_api_key
from .errors import HttpError
from .parsing import compare_dotted_versions, is_dotted_numeric_version


router = APIRouter(dependencies=[Depends(require_proxy_api_key)])


def parse_current_version(raw: Optional[str]) -> Optional[str]:
    if raw is None:
        return None
    value = raw.strip()
    if len(value) > 32 or not is_dotted_numeric_version(value):
        raise HttpError(
            400,
            "Invalid update check query parameters",
            details={
                "issues": [
                    {
                        "path": "current_version",
                        "message": "current_version must use dotted numeric format (for example 1.2.3)",
                    }
                ]
            },
        )
    return value


@router.get("/v1/app-updates/macos")
async def macos_update_check(
    request: Request,
    response: Response,
    current_version: Optional[str] = None,
    services: Services = Depends(get_services),
):
    settings = services.settings
    version = parse_current_version(current_version)

    update_available = None
    update_required = None
    if version is not None:
        update_available = compare_dotted_versions(version, settings.mac_app_latest_version) < 0
        update_required = compare_dotted_versions(version, settings.mac_app_minimum_supported_version) < 0

    response.headers["Cache-Control"] = "no-store"
    return {
        "request_id": request.state.request_id,
        "platform": "macos",
        "latest_version": settings.mac_app_latest_version,
        "minimum_supported_version": settings.mac_app_minimum_supported_version,
        "update_available": update_available,
        "update_required": update_required,
        "download_url": settings.mac_app_download_url,
        "release_notes_url": settings.mac_app_release_notes_url,
    }
