import re

from provisioning_service.errors import InvalidCredentialInput

_SEPARATORS = re.compile(r"[\s:\-\.]")
_HEX12 = re.compile(r"^[0-9a-f]{12}$")

def normalize_mac(mac_address: str) -> str:
    """'00:11:22:33:44:55', '00-11-22-33-44-55', '0011.2233.4455' -> '001122334455'"""
    if not isinstance(mac_address, str):
        raise InvalidCredentialInput(f"MAC address must be a string, got {type(mac_address).__name__}")
    cleaned = _SEPARATORS.sub("", mac_address).lower()
    if not _HEX12.match(cleaned):
        raise InvalidCredentialInput(f"Malformed MAC address: {mac_address!r}")
    return cleaned

def format_mac(normalized: str) -> str:
    """'001122334455' -> '00:11:22:33:44:55' (the device's mac-address field format)"""
    return ":".join(normalized[i:i + 2] for i in range(0, 12, 2))
