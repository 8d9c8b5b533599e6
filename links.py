import re
from urllib.parse import urlparse

DOWNLOAD_URL = "https://docs.google.com/uc?export=download&id={}"

_FILE_ID = re.compile(r"/d/([^/?#&]+)|[?&]id=([^&#]+)")


def to_download_link(link: str) -> str:
    """Turn a Google Drive view link into a direct download link.

    The file id is read from the ``/d/{id}/`` path segment or the ``id=`` query
    parameter. Anything else comes back unchanged.
    """
    if not link:
        return ""
    host = urlparse(link).hostname or ""
    if host != "google.com" and not host.endswith(".google.com"):
        return link
    match = _FILE_ID.search(link)
    if not match:
        return link
    return DOWNLOAD_URL.format(match.group(1) or match.group(2))
