"""
Blob retrieval for raw export files.

Exports are uploaded (already anonymized) to blob storage by the client and
handed to ingestion as a URL. Local paths and ``file://`` URLs are accepted
too, which is what the CLI and tests use.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import requests

from swipe_analysis.config import get_config
from swipe_analysis.errors import BlobFetchError

logger = logging.getLogger(__name__)


def _read_local(url: str, path: Path) -> Any:
    if not path.exists():
        raise BlobFetchError(url, "file not found")
    try:
        with path.open("r", encoding="utf-8") as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        raise BlobFetchError(url, f"invalid JSON ({e})") from e
    except UnicodeDecodeError as e:
        raise BlobFetchError(url, f"not UTF-8 text ({e.reason})") from e


def fetch_blob_json(url: str, timeout: Optional[float] = None) -> Dict[str, Any]:
    """
    Download and decode a raw export document.

    Args:
        url: http(s) URL, file:// URL, or filesystem path.
        timeout: Request timeout in seconds (defaults to config value).

    Returns:
        The decoded JSON document.

    Raises:
        BlobFetchError: On network failure, missing blob, or non-JSON payload.
    """
    parsed = urlparse(url)

    if parsed.scheme in ("http", "https"):
        if timeout is None:
            timeout = get_config().blob_timeout_seconds
        logger.info(f"Fetching export blob: {url}")
        try:
            resp = requests.get(url, timeout=timeout)
            resp.raise_for_status()
            document = resp.json()
        except requests.HTTPError as e:
            raise BlobFetchError(url, f"HTTP {e.response.status_code}") from e
        except ValueError as e:
            # requests' JSONDecodeError is both a ValueError and a RequestException
            raise BlobFetchError(url, f"invalid JSON ({e})") from e
        except requests.RequestException as e:
            raise BlobFetchError(url, str(e)) from e
    elif parsed.scheme == "file":
        document = _read_local(url, Path(parsed.path))
    elif parsed.scheme == "":
        document = _read_local(url, Path(url))
    else:
        raise BlobFetchError(url, f"unsupported scheme {parsed.scheme!r}")

    if not isinstance(document, dict):
        raise BlobFetchError(url, "export root must be a JSON object")

    logger.debug(f"Fetched export with sections: {sorted(document.keys())}")
    return document
