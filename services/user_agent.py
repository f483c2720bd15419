import re

DEVICE_TYPES = ("desktop", "mobile", "tablet")
UNKNOWN_DEVICE = "unknown"

# Tablet is checked first: tablet user agents also match the mobile pattern
_TABLET = re.compile(r"(ipad|tablet|playbook|silk)|(android(?!.*mobile))")
_MOBILE = re.compile(r"(mobile|iphone|ipod|android|blackberry|windows phone|webos)")
_DESKTOP = re.compile(r"(windows|macintosh|linux|x11)")


def get_device_type(user_agent: str | None) -> str:
    """Classify a User-Agent header as desktop, mobile, tablet or unknown."""
    if not user_agent:
        return UNKNOWN_DEVICE

    ua = user_agent.lower()
    if _TABLET.search(ua):
        return "tablet"
    if _MOBILE.search(ua):
        return "mobile"
    if _DESKTOP.search(ua):
        return "desktop"
    return UNKNOWN_DEVICE
