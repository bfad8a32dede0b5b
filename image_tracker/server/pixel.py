from __future__ import annotations

from typing import Dict


# 1×1 transparent GIF (hardcoded, valid)
_TRANSPARENT_1X1_GIF = bytes.fromhex(
    "47494638396101000100800000000000FFFFFF21F90401000000002C00000000"
    "010001000002024401003B"
)

NO_CACHE_HEADERS: Dict[str, str] = {
    "Cache-Control": "no-store, no-cache, must-revalidate, max-age=0",
    "Pragma": "no-cache",
    "Expires": "0",
}


def transparent_pixel_gif() -> bytes:
    return _TRANSPARENT_1X1_GIF
