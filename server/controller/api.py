# api.py
import logging

from fastapi import APIRouter, Depends, Request, status

from core import require_parent
from iptables import DeviceControl, IptablesError, is_valid_mac_address
from middleware import ValidationError, error_response
from models import (
    DeviceAccessRequest,
    DeviceAccessResponse,
    DeviceStatusResponse,
    ErrorResponse,
    HealthResponse,
    Principal,
)

logger = logging.getLogger(__name__)
router = APIRouter()

ERROR_RESPONSES = {
    code: {"model": ErrorResponse} for code in (400, 401, 403, 429, 500)
}


def get_device_control(request: Request) -> DeviceControl:
    return request.app.state.device_control


def validate_mac_address(mac) -> str:
    """Returns `mac` unchanged if valid, otherwise raises a 400 ValidationError."""
    if mac is None or mac == "":
        raise ValidationError("MAC address is required")
    if not is_valid_mac_address(mac):
        raise ValidationError("Invalid MAC address")
    return mac


async def mac_address_from_body(
    request: Request, principal: Principal = Depends(require_parent)
) -> str:
    """
    Reads `macAddress` from the JSON body once the caller is authorized.

    Bodies that are not a JSON object are treated as carrying no address.
    """
    try:
        payload = await request.json()
    except ValueError:
        payload = None
    if not isinstance(payload, dict):
        payload = {}
    return validate_mac_address(DeviceAccessRequest.model_validate(payload).macAddress)


def mac_address_from_path(
    macAddress: str, principal: Principal = Depends(require_parent)
) -> str:
    return validate_mac_address(macAddress)


@router.post(
    "/network/allow", response_model=DeviceAccessResponse, responses=ERROR_RESPONSES
)
def allow_device(
    mac_address: str = Depends(mac_address_from_body),
    device_control: DeviceControl = Depends(get_device_control),
):
    """Admits a device's forwarded traffic."""
    try:
        device_control.allow_device(mac_address)
    except (IptablesError, ValueError) as e:
        logger.error(f"Error allowing device {mac_address}: {e}")
        return error_response(
            status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to allow device access"
        )
    return DeviceAccessResponse(message="Device access allowed", macAddress=mac_address)


@router.post(
    "/network/block", response_model=DeviceAccessResponse, responses=ERROR_RESPONSES
)
def block_device(
    mac_address: str = Depends(mac_address_from_body),
    device_control: DeviceControl = Depends(get_device_control),
):
    """Revokes a device's forwarded traffic."""
    try:
        device_control.block_device(mac_address)
    except (IptablesError, ValueError) as e:
        logger.error(f"Error blocking device {mac_address}: {e}")
        return error_response(
            status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to block device access"
        )
    return DeviceAccessResponse(message="Device access blocked", macAddress=mac_address)


@router.get(
    "/network/status/{macAddress}", response_model=DeviceStatusResponse, responses=ERROR_RESPONSES
)
def device_status(
    mac_address: str = Depends(mac_address_from_path),
    device_control: DeviceControl = Depends(get_device_control),
):
    """Reports whether a device currently has an admit rule."""
    try:
        is_allowed = device_control.get_device_status(mac_address)
    except (IptablesError, ValueError) as e:
        logger.error(f"Error getting device status {mac_address}: {e}")
        return error_response(
            status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to get device status"
        )
    return DeviceStatusResponse(macAddress=mac_address, isAllowed=is_allowed)


@router.get("/health", response_model=HealthResponse)
def health():
    return HealthResponse(status="ok")
