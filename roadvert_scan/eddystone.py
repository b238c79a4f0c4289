#
# roadvert-scan - Eddystone-URL beacon scanner with page previews
#
# Decodes Eddystone-URL frames carried in the 0xFEAA service data of BLE
# advertisements into the web address they point at.
#

"""Eddystone-URL frame decoding."""

from typing import Dict, Optional

# 16-bit Eddystone service UUID 0xFEAA expanded to the 128-bit base UUID.
# bleak keys service data by the lower-case form.
EDDYSTONE_SERVICE_UUID = "0000feaa-0000-1000-8000-00805f9b34fb"

URL_FRAME_TYPE = 0x10

# Frame type byte + TX power byte precede the URL scheme byte.
_FRAME_HEADER_LEN = 2

URL_SCHEME_PREFIXES: Dict[int, str] = {
    0x00: "http://www.",
    0x01: "https://www.",
    0x02: "http://",
    0x03: "https://",
}

URL_EXPANSIONS: Dict[int, str] = {
    0x00: ".com/",
    0x01: ".org/",
    0x02: ".edu/",
    0x03: ".net/",
    0x04: ".info/",
    0x05: ".biz/",
    0x06: ".gov/",
    0x07: ".com",
}


def decode_url_frame(service_data: bytes) -> Optional[str]:
    """Decode Eddystone service data into a URL.

    Returns ``None`` when the payload is empty, is not a URL frame, or has
    nothing after the frame header.  An unknown scheme byte decodes to an
    empty scheme and any byte outside the expansion table is taken as a
    single character, so every URL frame decodes to *something*.
    """
    if not service_data or service_data[0] != URL_FRAME_TYPE:
        return None

    payload = service_data[_FRAME_HEADER_LEN:]
    if not payload:
        return None

    scheme = URL_SCHEME_PREFIXES.get(payload[0], "")
    rest = "".join(URL_EXPANSIONS.get(b, chr(b)) for b in payload[1:])
    return scheme + rest


def service_data_from_advertisement(adv) -> Optional[bytes]:
    """Return the Eddystone service data of a bleak ``AdvertisementData``."""
    service_data = getattr(adv, "service_data", None) or {}
    data = service_data.get(EDDYSTONE_SERVICE_UUID)
    if data is None:
        # Some backends report the UUID upper-cased
        for uuid, value in service_data.items():
            if uuid.lower() == EDDYSTONE_SERVICE_UUID:
                return bytes(value)
        return None
    return bytes(data)
