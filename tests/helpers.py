"""Test helpers shared across ghproxy test modules."""

import io

import requests
from requests.structures import CaseInsensitiveDict
from urllib3 import HTTPResponse


def make_upstream(status=200, headers=None, body=b""):
    """Build a requests.Response the way HTTPAdapter does for stream=True.

    ``headers`` may be a dict or a list of (name, value) pairs; repeated
    names are kept as separate fields on the raw response.
    """
    raw = HTTPResponse(
        body=io.BytesIO(body),
        headers=headers or [],
        status=status,
        preload_content=False,
        decode_content=False,
    )
    response = requests.Response()
    response.status_code = status
    response.raw = raw
    response.headers = CaseInsensitiveDict(raw.headers)
    return response
