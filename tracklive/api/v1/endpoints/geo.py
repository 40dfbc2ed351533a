import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from tracklive.api.v1.schemas import ErrorResponse, GeoIPResponse
from tracklive.dependencies import get_geoip_service
from tracklive.services.geoip_service import GeoIPLookupError, GeoIPService, extract_client_ip

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/objects", summary="Legacy object list (always empty)")
async def list_objects() -> Dict[str, Any]:
    """The server relays live client positions only; kept for old clients."""
    return {}


@router.get(
    "/geo-ip",
    response_model=GeoIPResponse,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    summary="Approximate location of the caller from its IP address",
)
async def get_geo_ip(
    request: Request,
    geoip_service: GeoIPService = Depends(get_geoip_service),
):
    client_ip = extract_client_ip(request.headers, request.client.host if request.client else None)
    try:
        result = await geoip_service.lookup(client_ip)
    except GeoIPLookupError as e:
        logger.warning(f"Geo IP lookup for {client_ip} failed ({e.status_code}): {e.message}")
        return JSONResponse(status_code=e.status_code, content={"error": e.message})
    return result
